"""测试夹具：为 pytest 提供数据库、对象存储替身与客户端的共享配置。"""

import os
from typing import Dict, Generator, List, Optional, Sequence

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

# 引擎在导入时按配置创建，必须先写入环境变量
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("LOCK_BACKEND", "memory")
os.environ.setdefault("TIMEZONE", "UTC")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.drive.core.config import get_settings  # noqa: E402
from app.packages.drive.core.dependencies import get_db, get_owner_lock, get_storage_gateway  # noqa: E402
from app.packages.drive.core.exceptions import StorageGatewayError  # noqa: E402
from app.packages.drive.core.locks import InMemoryOwnerLock  # noqa: E402
from app.packages.drive.db import session as db_session  # noqa: E402
from app.packages.drive.db.init_db import init_db  # noqa: E402
from app.packages.drive.models.base import Base  # noqa: E402
from app.packages.drive.services.storage_gateway import ObjectInfo, ObjectStorageGateway, UploadedPart  # noqa: E402
from app.packages.drive.services.tree_service import TreeService  # noqa: E402
from app.packages.drive.services.upload_service import UploadService  # noqa: E402


class FakeStorageGateway(ObjectStorageGateway):
    """内存版对象存储，记录每次删除与分片调用，便于断言。"""

    def __init__(self) -> None:
        self.objects: Dict[str, ObjectInfo] = {}
        self.deleted: List[str] = []
        self.fail_delete: set[str] = set()
        self.multipart: Dict[str, dict] = {}
        self.completed_parts: List[int] = []
        self.aborted: List[str] = []
        self._seq = 0

    def put_object(self, *, key: str, body: bytes, content_type: str) -> str:
        self.objects[key] = ObjectInfo(key=key, size=len(body), content_type=content_type)
        return key

    def head_object(self, *, key: str) -> Optional[ObjectInfo]:
        return self.objects.get(key)

    def delete_object(self, *, key: str) -> None:
        self.deleted.append(key)
        if key in self.fail_delete:
            raise StorageGatewayError("删除对象失败")
        self.objects.pop(key, None)

    def presign_upload(self, *, key: str, content_type: str, expires_in: int) -> str:
        return f"https://storage.test/{key}?X-Method=PUT&X-Expires={expires_in}"

    def presign_download(self, *, key: str, expires_in: int, filename: Optional[str] = None) -> str:
        return f"https://storage.test/{key}?X-Method=GET&X-Expires={expires_in}&filename={filename}"

    def create_multipart_upload(self, *, key: str, content_type: str) -> str:
        self._seq += 1
        upload_id = f"upload-{self._seq}"
        self.multipart[upload_id] = {"key": key, "content_type": content_type, "parts": {}}
        return upload_id

    def presign_upload_part(self, *, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        return f"https://storage.test/{key}?uploadId={upload_id}&partNumber={part_number}"

    def upload_part(self, upload_id: str, part_number: int, body: bytes) -> str:
        """模拟客户端凭分片 URL 直传，返回存储端给出的 ETag。"""
        etag = f'"etag-{upload_id}-{part_number}"'
        self.multipart[upload_id]["parts"][part_number] = (etag, len(body))
        return etag

    def complete_multipart_upload(self, *, key: str, upload_id: str, parts: Sequence[UploadedPart]) -> None:
        session = self.multipart.get(upload_id)
        if session is None or session["key"] != key:
            raise StorageGatewayError("分片上传合并失败: NoSuchUpload")
        uploaded = session["parts"]
        for part in parts:
            if uploaded.get(part.part_number, (None,))[0] != part.etag:
                raise StorageGatewayError("分片上传合并失败: InvalidPart")
        self.completed_parts = [p.part_number for p in parts]
        size = sum(uploaded[p.part_number][1] for p in parts)
        self.objects[key] = ObjectInfo(key=key, size=size, content_type=session["content_type"])
        del self.multipart[upload_id]

    def abort_multipart_upload(self, *, key: str, upload_id: str) -> None:
        self.multipart.pop(upload_id, None)
        self.aborted.append(upload_id)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    init_db()
    yield

    db_session.engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def clean_tables() -> Generator[None, None, None]:
    """每个用例结束后清空业务表，保证用例之间互不影响。"""
    yield
    with db_session.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway() -> FakeStorageGateway:
    return FakeStorageGateway()


@pytest.fixture()
def owner_lock() -> InMemoryOwnerLock:
    return InMemoryOwnerLock(blocking_timeout=1)


@pytest.fixture()
def tree_service(gateway, owner_lock) -> TreeService:
    return TreeService(gateway=gateway, lock=owner_lock)


@pytest.fixture()
def upload_service(tree_service, gateway) -> UploadService:
    return UploadService(tree=tree_service, gateway=gateway, settings=get_settings())


@pytest.fixture()
def client(gateway, owner_lock):
    """构建 FastAPI TestClient，并注入测试专用的数据库与对象存储依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_gateway] = lambda: gateway
    app.dependency_overrides[get_owner_lock] = lambda: owner_lock

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
