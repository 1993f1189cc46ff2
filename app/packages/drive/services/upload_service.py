"""上传编排服务：协调对象存储网关与文件树服务，实现"先确认对象、再写元数据"。

两种上传协议共享同一条规则：引用某个 storage_key 的条目，只在确认该对象已存在后
才会创建。反过来的情况（对象已写入但元数据创建失败或客户端放弃）会留下孤儿对象，
这里只记录 WARNING 日志，不做自动清理。

分片上传状态机（按 (storage_key, upload_id) 持久化在 upload_sessions 表）：
initiated -> part_url_issued (可重复) -> completed | aborted；initiated 也可直接 aborted。
"""

from __future__ import annotations

import mimetypes
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import Settings
from app.packages.drive.core.constants import (
    DEFAULT_MIME_TYPE,
    MULTIPART_MAX_PART_NUMBER,
    MULTIPART_MIN_PART_NUMBER,
)
from app.packages.drive.core.exceptions import (
    InvalidOperationError,
    ItemNotFoundError,
    StorageInconsistencyError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.upload_session import CRUDUploadSession, upload_session_crud
from app.packages.drive.models.item import Item, ItemKind
from app.packages.drive.models.upload_session import UploadSession, UploadStatus
from app.packages.drive.services.storage_gateway import ObjectStorageGateway, UploadedPart
from app.packages.drive.services.tree_service import TreeService
from app.packages.drive.utils.path_utils import build_storage_key, normalize_item_name, owner_key_prefix

# 各操作允许的起始状态
_PART_URL_FROM = (UploadStatus.INITIATED, UploadStatus.PART_URL_ISSUED)
_COMPLETE_FROM = (UploadStatus.PART_URL_ISSUED,)
_ABORT_FROM = (UploadStatus.INITIATED, UploadStatus.PART_URL_ISSUED)


def _guess_mime(filename: str, content_type: Optional[str]) -> str:
    return content_type or mimetypes.guess_type(filename)[0] or DEFAULT_MIME_TYPE


def _validate_parts(parts: Iterable[Any]) -> List[UploadedPart]:
    """校验分片列表并按分片编号升序返回。"""
    normalized: List[UploadedPart] = []
    for raw in parts or []:
        if isinstance(raw, UploadedPart):
            part = raw
        elif isinstance(raw, Mapping):
            number = raw.get("part_number", raw.get("PartNumber"))
            etag = raw.get("etag", raw.get("ETag"))
            part = UploadedPart(part_number=number, etag=etag)
        else:
            part = UploadedPart(part_number=getattr(raw, "part_number", None), etag=getattr(raw, "etag", None))
        if isinstance(part.part_number, bool) or not isinstance(part.part_number, int):
            raise InvalidOperationError("分片编号必须为整数")
        if not MULTIPART_MIN_PART_NUMBER <= part.part_number <= MULTIPART_MAX_PART_NUMBER:
            raise InvalidOperationError(
                f"分片编号必须在 {MULTIPART_MIN_PART_NUMBER}-{MULTIPART_MAX_PART_NUMBER} 之间"
            )
        if not isinstance(part.etag, str) or not part.etag.strip():
            raise InvalidOperationError("分片 ETag 不能为空")
        normalized.append(part)

    if not normalized:
        raise InvalidOperationError("分片列表不能为空")
    numbers = [p.part_number for p in normalized]
    if len(set(numbers)) != len(numbers):
        raise InvalidOperationError("分片编号不能重复")
    return sorted(normalized, key=lambda p: p.part_number)


class UploadService:
    def __init__(
        self,
        *,
        tree: TreeService,
        gateway: ObjectStorageGateway,
        settings: Settings,
        sessions: CRUDUploadSession = upload_session_crud,
    ) -> None:
        self._tree = tree
        self._gateway = gateway
        self._sessions = sessions
        self._upload_expires = settings.upload_url_expire_seconds
        self._download_expires = settings.download_url_expire_seconds

    # ----------------------------
    # 单次上传
    # ----------------------------
    def create_upload_url(
        self,
        db: Session,
        *,
        owner_id: str,
        filename: str,
        content_type: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        filename = normalize_item_name(filename)
        self._check_target_folder(db, owner_id=owner_id, parent_id=parent_id)
        storage_key = build_storage_key(owner_id, filename)
        url = self._gateway.presign_upload(
            key=storage_key,
            content_type=_guess_mime(filename, content_type),
            expires_in=self._upload_expires,
        )
        logger.info("Upload URL issued: owner=%s key=%s", owner_id, storage_key)
        return {"upload_url": url, "storage_key": storage_key, "expires_in": self._upload_expires}

    def complete_upload(
        self,
        db: Session,
        *,
        owner_id: str,
        filename: str,
        storage_key: str,
        parent_id: Optional[int] = None,
        mime_type: Optional[str] = None,
    ) -> Item:
        self._check_key_owner(owner_id, storage_key)
        info = self._gateway.head_object(key=storage_key)
        if info is None:
            logger.warning("Upload confirmation failed, object missing: owner=%s key=%s", owner_id, storage_key)
            raise StorageInconsistencyError()
        return self._create_file_item(
            db,
            owner_id=owner_id,
            filename=filename,
            storage_key=storage_key,
            parent_id=parent_id,
            size=info.size,
            mime_type=mime_type or info.content_type,
        )

    # ----------------------------
    # 分片上传
    # ----------------------------
    def initiate_multipart(
        self,
        db: Session,
        *,
        owner_id: str,
        filename: str,
        content_type: Optional[str] = None,
        parent_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        filename = normalize_item_name(filename)
        self._check_target_folder(db, owner_id=owner_id, parent_id=parent_id)
        storage_key = build_storage_key(owner_id, filename)
        mime = _guess_mime(filename, content_type)
        upload_id = self._gateway.create_multipart_upload(key=storage_key, content_type=mime)
        self._sessions.create(
            db,
            {
                "owner_id": owner_id,
                "storage_key": storage_key,
                "upload_id": upload_id,
                "filename": filename,
                "content_type": mime,
                "parent_id": parent_id,
                "status": UploadStatus.INITIATED,
            },
        )
        logger.info("Multipart upload initiated: owner=%s key=%s upload_id=%s", owner_id, storage_key, upload_id)
        return {"upload_id": upload_id, "storage_key": storage_key}

    def multipart_part_url(
        self,
        db: Session,
        *,
        owner_id: str,
        storage_key: str,
        upload_id: str,
        part_number: int,
    ) -> Dict[str, Any]:
        if not MULTIPART_MIN_PART_NUMBER <= part_number <= MULTIPART_MAX_PART_NUMBER:
            raise InvalidOperationError(
                f"分片编号必须在 {MULTIPART_MIN_PART_NUMBER}-{MULTIPART_MAX_PART_NUMBER} 之间"
            )
        session = self._get_session(db, owner_id=owner_id, storage_key=storage_key, upload_id=upload_id)
        self._ensure_status(session, _PART_URL_FROM)
        url = self._gateway.presign_upload_part(
            key=storage_key,
            upload_id=upload_id,
            part_number=part_number,
            expires_in=self._upload_expires,
        )
        if session.status != UploadStatus.PART_URL_ISSUED:
            session.status = UploadStatus.PART_URL_ISSUED
            self._sessions.save(db, session)
        return {"url": url, "part_number": part_number, "expires_in": self._upload_expires}

    def complete_multipart(
        self,
        db: Session,
        *,
        owner_id: str,
        storage_key: str,
        upload_id: str,
        parts: Iterable[Any],
        filename: Optional[str] = None,
        parent_id: Optional[int] = None,
        mime_type: Optional[str] = None,
    ) -> Item:
        ordered_parts = _validate_parts(parts)
        session = self._get_session(db, owner_id=owner_id, storage_key=storage_key, upload_id=upload_id)
        self._ensure_status(session, _COMPLETE_FROM)

        # 存储端拒绝时抛出 StorageGatewayError，会话保持原状态、不创建条目
        self._gateway.complete_multipart_upload(key=storage_key, upload_id=upload_id, parts=ordered_parts)
        session.status = UploadStatus.COMPLETED
        self._sessions.save(db, session)
        logger.info("Multipart upload completed: owner=%s key=%s parts=%s", owner_id, storage_key, len(ordered_parts))

        info = self._gateway.head_object(key=storage_key)
        if info is None:
            logger.warning("Completed multipart object missing: owner=%s key=%s", owner_id, storage_key)
            raise StorageInconsistencyError()
        item = self._create_file_item(
            db,
            owner_id=owner_id,
            filename=filename or session.filename,
            storage_key=storage_key,
            parent_id=parent_id if parent_id is not None else session.parent_id,
            size=info.size,
            mime_type=mime_type or session.content_type or info.content_type,
        )
        session.item_id = item.id
        self._sessions.save(db, session)
        return item

    def abort_multipart(self, db: Session, *, owner_id: str, storage_key: str, upload_id: str) -> None:
        session = self._get_session(db, owner_id=owner_id, storage_key=storage_key, upload_id=upload_id)
        self._ensure_status(session, _ABORT_FROM)
        self._gateway.abort_multipart_upload(key=storage_key, upload_id=upload_id)
        session.status = UploadStatus.ABORTED
        self._sessions.save(db, session)
        logger.info("Multipart upload aborted: owner=%s key=%s upload_id=%s", owner_id, storage_key, upload_id)

    # ----------------------------
    # 下载
    # ----------------------------
    def create_download_url(self, db: Session, *, owner_id: str, item_id: int) -> Dict[str, Any]:
        item = self._tree.find_one(db, item_id=item_id, owner_id=owner_id)
        if item.kind != ItemKind.FILE:
            raise InvalidOperationError("只能下载文件")
        if not item.storage_key:
            raise InvalidOperationError("该文件没有关联的存储对象")
        url = self._gateway.presign_download(
            key=item.storage_key,
            expires_in=self._download_expires,
            filename=item.name,
        )
        return {"url": url, "expires_in": self._download_expires}

    # ----------------------------
    # 内部工具
    # ----------------------------
    def _create_file_item(
        self,
        db: Session,
        *,
        owner_id: str,
        filename: str,
        storage_key: str,
        parent_id: Optional[int],
        size: Optional[int],
        mime_type: Optional[str],
    ) -> Item:
        try:
            return self._tree.create(
                db,
                owner_id=owner_id,
                name=filename,
                kind=ItemKind.FILE,
                parent_id=parent_id,
                size=size,
                mime_type=mime_type,
                storage_key=storage_key,
            )
        except Exception:
            # TODO: 孤儿对象目前仅记录日志，需要定期对账任务按 key 前缀清理
            logger.warning("Object stored but metadata creation failed, orphaned object: %s", storage_key)
            raise

    def _check_target_folder(self, db: Session, *, owner_id: str, parent_id: Optional[int]) -> None:
        if parent_id is None:
            return
        parent = self._tree.find_one(db, item_id=parent_id, owner_id=owner_id)
        if parent.kind != ItemKind.FOLDER:
            raise InvalidOperationError("父节点必须是文件夹")

    @staticmethod
    def _check_key_owner(owner_id: str, storage_key: str) -> None:
        if not storage_key or not storage_key.startswith(owner_key_prefix(owner_id)):
            raise InvalidOperationError("存储键不属于当前用户")

    def _get_session(self, db: Session, *, owner_id: str, storage_key: str, upload_id: str) -> UploadSession:
        session = self._sessions.get_by_key(db, owner_id=owner_id, storage_key=storage_key, upload_id=upload_id)
        if session is None:
            raise ItemNotFoundError("分片上传会话不存在")
        return session

    @staticmethod
    def _ensure_status(session: UploadSession, allowed: tuple) -> None:
        if session.status not in allowed:
            raise InvalidOperationError(f"分片上传会话状态为 {session.status.value}，不允许该操作")
