"""分片上传会话模型：记录每个 (storage_key, upload_id) 的状态机进度。

状态流转：initiated -> part_url_issued (可重复) -> completed | aborted；
initiated 也可直接 aborted。completed/aborted 为终态。
"""

from __future__ import annotations

import enum
from typing import Optional

from sqlalchemy import Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.core.constants import (
    ITEM_NAME_MAX_LENGTH,
    OWNER_ID_MAX_LENGTH,
    STORAGE_KEY_MAX_LENGTH,
)
from app.packages.drive.models.base import Base, TimestampMixin


class UploadStatus(str, enum.Enum):
    INITIATED = "initiated"
    PART_URL_ISSUED = "part_url_issued"
    COMPLETED = "completed"
    ABORTED = "aborted"


class UploadSession(TimestampMixin, Base):
    __tablename__ = "upload_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(OWNER_ID_MAX_LENGTH), index=True)
    storage_key: Mapped[str] = mapped_column(String(STORAGE_KEY_MAX_LENGTH))
    upload_id: Mapped[str] = mapped_column(String(1024))
    filename: Mapped[str] = mapped_column(String(ITEM_NAME_MAX_LENGTH))
    content_type: Mapped[str] = mapped_column(String(255))
    # 目标文件夹；仅作记录，完成时仍以请求中的 parent_id 为准并重新校验
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus, name="upload_status", values_callable=lambda states: [s.value for s in states]),
        default=UploadStatus.INITIATED,
    )
    item_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("storage_key", "upload_id", name="uq_upload_sessions_key_upload"),
    )
