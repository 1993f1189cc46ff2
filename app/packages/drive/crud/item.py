"""Item CRUD：文件树节点的持久化访问。

同级重名与重复引用同一 storage_key 都由数据库唯一约束原子地拒绝，这里把
``IntegrityError`` 统一转换为 ``ItemConflictError``；服务层不做"先查再插"的预检查。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.exceptions import ItemConflictError
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.item import Item, ItemKind


class CRUDItem(CRUDBase[Item]):
    def get_owned(self, db: Session, *, item_id: int, owner_id: str) -> Item | None:
        return (
            self.query(db)
            .filter(Item.id == item_id)
            .filter(Item.owner_id == owner_id)
            .first()
        )

    def list_by_parent(self, db: Session, *, owner_id: str, parent_id: Optional[int]) -> List[Item]:
        q = self.query(db).filter(Item.owner_id == owner_id)
        if parent_id is None:
            q = q.filter(Item.parent_id.is_(None))
        else:
            q = q.filter(Item.parent_id == parent_id)
        return q.all()

    def list_by_owner_and_kind(self, db: Session, *, owner_id: str, kind: Optional[ItemKind] = None) -> List[Item]:
        q = self.query(db).filter(Item.owner_id == owner_id)
        if kind is not None:
            q = q.filter(Item.kind == kind)
        return q.all()

    def list_filtered(
        self,
        db: Session,
        *,
        owner_id: str,
        filter_parent: bool = False,
        parent_id: Optional[int] = None,
        kind: Optional[ItemKind] = None,
        search: Optional[str] = None,
    ) -> List[Item]:
        """按所有者列出条目；``filter_parent`` 为真时 ``parent_id=None`` 表示根目录。"""
        q = self.query(db).filter(Item.owner_id == owner_id)
        if filter_parent:
            if parent_id is None:
                q = q.filter(Item.parent_id.is_(None))
            else:
                q = q.filter(Item.parent_id == parent_id)
        if kind is not None:
            q = q.filter(Item.kind == kind)
        if search:
            q = q.filter(func.lower(Item.name).contains(search.lower(), autoescape=True))
        return q.all()

    def usage_by_owner(self, db: Session, *, owner_id: str) -> tuple[int, int]:
        """返回 (文件总字节数, 文件数量)，文件夹不计入。"""
        total, count = (
            db.query(func.coalesce(func.sum(Item.size), 0), func.count(Item.id))
            .filter(Item.owner_id == owner_id)
            .filter(Item.kind == ItemKind.FILE)
            .one()
        )
        return int(total or 0), int(count or 0)

    def insert(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> Item:
        try:
            return self.create(db, obj_in, auto_commit=auto_commit)
        except IntegrityError as exc:
            if not auto_commit:
                db.rollback()
            if "storage_key" in str(exc.orig):
                raise ItemConflictError("该存储对象已被其他条目引用") from exc
            raise ItemConflictError() from exc

    def update(self, db: Session, db_obj: Item, *, auto_commit: bool = True) -> Item:
        try:
            return self.save(db, db_obj, auto_commit=auto_commit)
        except IntegrityError as exc:
            if not auto_commit:
                db.rollback()
            raise ItemConflictError() from exc


item_crud = CRUDItem(Item)
