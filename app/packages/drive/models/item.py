"""文件树节点模型（文件与文件夹合并为一张表）。

存储规则：
- path：物化路径，以 '/' 开头，不以 '/' 结尾，根节点为 "/{name}"；
- parent_id：父文件夹 ID，根节点为 NULL；
- name：当前节点名，不含 '/'，同一所有者同一父目录下唯一；
- 对于文件：size/mime_type/storage_key 有意义；文件夹三者均为 NULL。
"""

from __future__ import annotations

import enum
from typing import Optional

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.core.constants import (
    ITEM_NAME_MAX_LENGTH,
    ITEM_PATH_MAX_LENGTH,
    OWNER_ID_MAX_LENGTH,
    STORAGE_KEY_MAX_LENGTH,
)
from app.packages.drive.models.base import Base, TimestampMixin


class ItemKind(str, enum.Enum):
    FOLDER = "folder"
    FILE = "file"


class Item(TimestampMixin, Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(OWNER_ID_MAX_LENGTH), index=True)
    # 父节点删除走业务层级联（需要逐个释放对象存储），数据库层不做 ON DELETE
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("items.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(ITEM_NAME_MAX_LENGTH))
    kind: Mapped[ItemKind] = mapped_column(
        Enum(ItemKind, name="item_kind", values_callable=lambda kinds: [k.value for k in kinds]),
        index=True,
    )
    path: Mapped[str] = mapped_column(String(ITEM_PATH_MAX_LENGTH), index=True)
    size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(String(STORAGE_KEY_MAX_LENGTH), nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "parent_id", "name", name="uq_items_owner_parent_name"),
        # 唯一约束中 NULL 互不相等，根目录下的同名校验需要单独的部分唯一索引
        Index(
            "uq_items_owner_root_name",
            "owner_id",
            "name",
            unique=True,
            sqlite_where=text("parent_id IS NULL"),
            postgresql_where=text("parent_id IS NULL"),
        ),
        # 一个存储对象至多对应一个条目
        Index(
            "uq_items_storage_key",
            "storage_key",
            unique=True,
            sqlite_where=text("storage_key IS NOT NULL"),
            postgresql_where=text("storage_key IS NOT NULL"),
        ),
    )

    @property
    def is_folder(self) -> bool:
        return self.kind == ItemKind.FOLDER

    def __repr__(self) -> str:
        return f"<Item id={self.id} owner={self.owner_id!r} path={self.path!r}>"
