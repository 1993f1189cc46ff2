"""上传编排测试：先确认对象再写元数据，以及分片上传状态机。"""

import pytest

from app.packages.drive.core.exceptions import (
    InvalidOperationError,
    ItemConflictError,
    ItemNotFoundError,
    StorageGatewayError,
    StorageInconsistencyError,
)
from app.packages.drive.models.item import Item
from app.packages.drive.models.upload_session import UploadSession, UploadStatus
from app.packages.drive.services.storage_gateway import UploadedPart

OWNER = "owner-1"


def _initiate(upload_service, db, filename="movie.mp4", parent_id=None):
    result = upload_service.initiate_multipart(
        db, owner_id=OWNER, filename=filename, content_type="video/mp4", parent_id=parent_id
    )
    return result["storage_key"], result["upload_id"]


def _session_status(db, upload_id):
    db.expire_all()
    return db.query(UploadSession).filter(UploadSession.upload_id == upload_id).one().status


def test_single_shot_upload_flow(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    issued = upload_service.create_upload_url(db, owner_id=OWNER, filename="report.pdf")
    key = issued["storage_key"]
    assert key.startswith(f"{OWNER}/") and key.endswith("-report.pdf")
    assert issued["expires_in"] == 3600
    assert key in issued["upload_url"]

    # 客户端尚未上传，确认必须失败且不产生条目
    with pytest.raises(StorageInconsistencyError):
        upload_service.complete_upload(db, owner_id=OWNER, filename="report.pdf", storage_key=key)
    assert db.query(Item).count() == 0

    gateway.put_object(key=key, body=b"%PDF-1.7 ...", content_type="application/pdf")
    item = upload_service.complete_upload(db, owner_id=OWNER, filename="report.pdf", storage_key=key)
    assert item.path == "/report.pdf"
    assert item.size == len(b"%PDF-1.7 ...")
    assert item.mime_type == "application/pdf"
    assert item.storage_key == key


def test_storage_key_is_confirmed_only_once(upload_service, tree_service, gateway, db_session_fixture):
    """同一对象不能被第二个条目引用，删除唯一引用方后对象才被释放。"""
    db = db_session_fixture
    key = upload_service.create_upload_url(db, owner_id=OWNER, filename="a.txt")["storage_key"]
    gateway.put_object(key=key, body=b"hello", content_type="text/plain")
    first = upload_service.complete_upload(db, owner_id=OWNER, filename="a.txt", storage_key=key)

    with pytest.raises(ItemConflictError):
        upload_service.complete_upload(db, owner_id=OWNER, filename="b.txt", storage_key=key)
    assert db.query(Item).filter(Item.storage_key == key).count() == 1

    tree_service.remove(db, item_id=first.id, owner_id=OWNER)
    assert gateway.deleted == [key]
    assert db.query(Item).count() == 0


def test_multipart_key_cannot_be_confirmed_again(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    upload_service.multipart_part_url(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=1)
    etag = gateway.upload_part(upload_id, 1, b"x" * 10)
    upload_service.complete_multipart(
        db, owner_id=OWNER, storage_key=key, upload_id=upload_id, parts=[{"PartNumber": 1, "ETag": etag}]
    )

    with pytest.raises(ItemConflictError):
        upload_service.complete_upload(db, owner_id=OWNER, filename="copy.mp4", storage_key=key)
    assert db.query(Item).count() == 1


def test_complete_upload_rejects_foreign_key(upload_service, gateway, db_session_fixture):
    gateway.put_object(key="owner-2/1-secret.txt", body=b"x", content_type="text/plain")
    with pytest.raises(InvalidOperationError):
        upload_service.complete_upload(
            db_session_fixture, owner_id=OWNER, filename="secret.txt", storage_key="owner-2/1-secret.txt"
        )


def test_upload_url_requires_folder_target(upload_service, tree_service, db_session_fixture):
    db = db_session_fixture
    note = tree_service.create(db, owner_id=OWNER, name="note.txt", kind="file")
    with pytest.raises(InvalidOperationError):
        upload_service.create_upload_url(db, owner_id=OWNER, filename="a.txt", parent_id=note.id)
    with pytest.raises(ItemNotFoundError):
        upload_service.create_upload_url(db, owner_id=OWNER, filename="a.txt", parent_id=note.id + 1000)
    with pytest.raises(InvalidOperationError):
        upload_service.create_upload_url(db, owner_id=OWNER, filename="..")


def test_duplicate_name_leaves_orphan_object(upload_service, tree_service, gateway, db_session_fixture):
    db = db_session_fixture
    tree_service.create(db, owner_id=OWNER, name="a.txt", kind="file")
    key = upload_service.create_upload_url(db, owner_id=OWNER, filename="a.txt")["storage_key"]
    gateway.put_object(key=key, body=b"data", content_type="text/plain")

    with pytest.raises(ItemConflictError):
        upload_service.complete_upload(db, owner_id=OWNER, filename="a.txt", storage_key=key)
    assert key in gateway.objects
    assert gateway.deleted == []


def test_multipart_happy_path(upload_service, tree_service, gateway, db_session_fixture):
    db = db_session_fixture
    videos = tree_service.create(db, owner_id=OWNER, name="Videos", kind="folder")
    key, upload_id = _initiate(upload_service, db, parent_id=videos.id)
    assert _session_status(db, upload_id) == UploadStatus.INITIATED

    etags = {}
    for number in (1, 2):
        issued = upload_service.multipart_part_url(
            db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=number
        )
        assert issued["part_number"] == number
        etags[number] = gateway.upload_part(upload_id, number, b"x" * (number * 100))
    assert _session_status(db, upload_id) == UploadStatus.PART_URL_ISSUED

    # 乱序提交，存储端应收到升序分片
    parts = [{"PartNumber": 2, "ETag": etags[2]}, {"PartNumber": 1, "ETag": etags[1]}]
    item = upload_service.complete_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, parts=parts)

    assert gateway.completed_parts == [1, 2]
    assert item.path == "/Videos/movie.mp4"
    assert item.size == 300
    assert item.mime_type == "video/mp4"
    assert _session_status(db, upload_id) == UploadStatus.COMPLETED
    session = db.query(UploadSession).filter(UploadSession.upload_id == upload_id).one()
    assert session.item_id == item.id


def test_multipart_rejects_invalid_parts(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    upload_service.multipart_part_url(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=1)
    etag = gateway.upload_part(upload_id, 1, b"abc")

    bad_part_lists = [
        [],
        [UploadedPart(part_number=1, etag=etag), UploadedPart(part_number=1, etag=etag)],
        [UploadedPart(part_number=0, etag=etag)],
        [UploadedPart(part_number=10001, etag=etag)],
        [UploadedPart(part_number=1, etag="")],
    ]
    for parts in bad_part_lists:
        with pytest.raises(InvalidOperationError):
            upload_service.complete_multipart(
                db, owner_id=OWNER, storage_key=key, upload_id=upload_id, parts=parts
            )
    assert _session_status(db, upload_id) == UploadStatus.PART_URL_ISSUED
    assert db.query(Item).count() == 0


def test_multipart_part_number_range(upload_service, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    for number in (0, 10001):
        with pytest.raises(InvalidOperationError):
            upload_service.multipart_part_url(
                db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=number
            )


def test_complete_before_any_part_url_is_rejected(upload_service, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    with pytest.raises(InvalidOperationError):
        upload_service.complete_multipart(
            db,
            owner_id=OWNER,
            storage_key=key,
            upload_id=upload_id,
            parts=[UploadedPart(part_number=1, etag='"e"')],
        )


def test_gateway_rejection_keeps_session_open(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    upload_service.multipart_part_url(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=1)

    with pytest.raises(StorageGatewayError):
        upload_service.complete_multipart(
            db,
            owner_id=OWNER,
            storage_key=key,
            upload_id=upload_id,
            parts=[UploadedPart(part_number=1, etag='"never-uploaded"')],
        )
    assert _session_status(db, upload_id) == UploadStatus.PART_URL_ISSUED
    assert db.query(Item).count() == 0


def test_abort_creates_no_item_and_is_terminal(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    upload_service.abort_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id)

    assert gateway.aborted == [upload_id]
    assert _session_status(db, upload_id) == UploadStatus.ABORTED
    assert db.query(Item).count() == 0

    with pytest.raises(InvalidOperationError):
        upload_service.multipart_part_url(
            db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=1
        )
    with pytest.raises(InvalidOperationError):
        upload_service.abort_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id)


def test_completed_session_cannot_be_reused(upload_service, gateway, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    upload_service.multipart_part_url(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, part_number=1)
    parts = [UploadedPart(part_number=1, etag=gateway.upload_part(upload_id, 1, b"abc"))]
    upload_service.complete_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, parts=parts)

    with pytest.raises(InvalidOperationError):
        upload_service.complete_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id, parts=parts)
    with pytest.raises(InvalidOperationError):
        upload_service.abort_multipart(db, owner_id=OWNER, storage_key=key, upload_id=upload_id)


def test_session_is_bound_to_owner(upload_service, db_session_fixture):
    db = db_session_fixture
    key, upload_id = _initiate(upload_service, db)
    with pytest.raises(ItemNotFoundError):
        upload_service.multipart_part_url(
            db, owner_id="owner-2", storage_key=key, upload_id=upload_id, part_number=1
        )
    with pytest.raises(ItemNotFoundError):
        upload_service.abort_multipart(db, owner_id="owner-2", storage_key=key, upload_id=upload_id)


def test_download_url_for_files_only(upload_service, tree_service, gateway, db_session_fixture):
    db = db_session_fixture
    key = f"{OWNER}/1-a.txt"
    gateway.put_object(key=key, body=b"hello", content_type="text/plain")
    stored = upload_service.complete_upload(db, owner_id=OWNER, filename="a.txt", storage_key=key)
    folder = tree_service.create(db, owner_id=OWNER, name="Docs", kind="folder")
    draft = tree_service.create(db, owner_id=OWNER, name="draft.txt", kind="file")

    result = upload_service.create_download_url(db, owner_id=OWNER, item_id=stored.id)
    assert key in result["url"] and "filename=a.txt" in result["url"]
    assert result["expires_in"] == 3600

    for item_id in (folder.id, draft.id):
        with pytest.raises(InvalidOperationError):
            upload_service.create_download_url(db, owner_id=OWNER, item_id=item_id)
    with pytest.raises(ItemNotFoundError):
        upload_service.create_download_url(db, owner_id="owner-2", item_id=stored.id)
