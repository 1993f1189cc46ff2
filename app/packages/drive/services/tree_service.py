"""文件树服务：在 Item 存储之上实现增删改查、移动、树展开、面包屑与用量统计。

结构约束（每次成功变更后必须成立）：
- 同一所有者同一父目录下名称唯一（由数据库唯一约束保证）；
- 沿 parent_id 向上必然终止于根节点，不存在环；
- 父节点必须是同一所有者的文件夹；
- path 始终等于由祖先链推导出的物化路径；
- 文件夹不携带 size/mime_type/storage_key。

所有遍历都使用显式栈并限制深度，不依赖函数递归；级联变更在所有者锁内、
单个数据库事务中完成，失败整体回滚。
"""

from __future__ import annotations

import mimetypes
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.constants import DEFAULT_MIME_TYPE
from app.packages.drive.core.exceptions import (
    InvalidOperationError,
    ItemNotFoundError,
    StorageGatewayError,
    TreeConsistencyError,
)
from app.packages.drive.core.locks import OwnerLock
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.item import CRUDItem, item_crud
from app.packages.drive.models.item import Item, ItemKind
from app.packages.drive.services.storage_gateway import ObjectStorageGateway
from app.packages.drive.utils.path_utils import build_item_path, normalize_item_name


@dataclass
class ItemNode:
    """带子节点的条目；文件的 ``children`` 为 ``None``。"""

    item: Item
    children: Optional[List["ItemNode"]] = None


def sibling_sort_key(item: Item) -> tuple:
    # 文件夹在前；同类按名称忽略大小写升序，再以原名与 ID 兜底形成全序
    return (0 if item.kind == ItemKind.FOLDER else 1, item.name.lower(), item.name, item.id)


def sort_siblings(items: Iterable[Item]) -> List[Item]:
    return sorted(items, key=sibling_sort_key)


def _coerce_kind(kind: Any) -> ItemKind:
    try:
        return kind if isinstance(kind, ItemKind) else ItemKind(str(kind).lower())
    except ValueError as exc:
        raise InvalidOperationError("条目类型必须为 file 或 folder") from exc


class TreeService:
    def __init__(
        self,
        *,
        gateway: ObjectStorageGateway,
        lock: OwnerLock,
        store: CRUDItem = item_crud,
        max_depth: int = 10000,
    ) -> None:
        self._gateway = gateway
        self._lock = lock
        self._store = store
        self._max_depth = max_depth

    # ----------------------------
    # 创建
    # ----------------------------
    def create(
        self,
        db: Session,
        *,
        owner_id: str,
        name: str,
        kind: Any,
        parent_id: Optional[int] = None,
        size: Optional[int] = None,
        mime_type: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> Item:
        kind = _coerce_kind(kind)
        name = normalize_item_name(name)
        payload: Dict[str, Any] = {"owner_id": owner_id, "name": name, "kind": kind, "parent_id": parent_id}
        if kind == ItemKind.FOLDER:
            if any(v is not None for v in (size, mime_type, storage_key)):
                raise InvalidOperationError("文件夹不能携带文件属性（大小、类型、存储键）")
        else:
            if size is not None and size < 0:
                raise InvalidOperationError("文件大小不能为负数")
            payload["size"] = int(size or 0)
            payload["mime_type"] = mime_type or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
            payload["storage_key"] = storage_key

        # 持锁创建：避免与父目录的移动级联交错，导致新节点保留旧路径
        with self._lock.hold(owner_id):
            parent_path: Optional[str] = None
            if parent_id is not None:
                parent_path = self._get_parent_folder(db, owner_id=owner_id, parent_id=parent_id).path
            payload["path"] = build_item_path(name, parent_path)
            item = self._store.insert(db, payload)

        logger.info("Item created: owner=%s id=%s path=%s kind=%s", owner_id, item.id, item.path, kind.value)
        return item

    # ----------------------------
    # 查询
    # ----------------------------
    def find_all(self, db: Session, *, owner_id: str, filters: Optional[Mapping[str, Any]] = None) -> List[Item]:
        """按条件列出条目；``filters`` 中出现 ``parent_id`` 键（即使为 None）才按父目录过滤。"""
        filters = filters or {}
        kind = filters.get("kind")
        search = (filters.get("search") or "").strip() or None
        rows = self._store.list_filtered(
            db,
            owner_id=owner_id,
            filter_parent="parent_id" in filters,
            parent_id=filters.get("parent_id"),
            kind=_coerce_kind(kind) if kind is not None else None,
            search=search,
        )
        return sort_siblings(rows)

    def find_one(self, db: Session, *, item_id: int, owner_id: str) -> Item:
        item = self._store.get_owned(db, item_id=item_id, owner_id=owner_id)
        if item is None:
            raise ItemNotFoundError()
        return item

    def find_with_children(self, db: Session, *, item_id: int, owner_id: str) -> ItemNode:
        item = self.find_one(db, item_id=item_id, owner_id=owner_id)
        if not item.is_folder:
            return ItemNode(item=item)
        children = self._store.list_by_parent(db, owner_id=owner_id, parent_id=item.id)
        return ItemNode(item=item, children=[ItemNode(item=c) for c in sort_siblings(children)])

    def get_tree(self, db: Session, *, owner_id: str) -> List[ItemNode]:
        """一次查询取出所有者的全部条目，再用显式栈组装森林。"""
        by_parent: Dict[Optional[int], List[Item]] = defaultdict(list)
        for it in self._store.list_by_owner_and_kind(db, owner_id=owner_id):
            by_parent[it.parent_id].append(it)

        roots = [ItemNode(item=it) for it in sort_siblings(by_parent.get(None, []))]
        visited = {node.item.id for node in roots}
        stack = [(node, 1) for node in roots if node.item.is_folder]
        while stack:
            node, depth = stack.pop()
            if depth > self._max_depth:
                raise TreeConsistencyError("目录层级超过上限")
            node.children = []
            for child in sort_siblings(by_parent.get(node.item.id, [])):
                if child.id in visited:
                    raise TreeConsistencyError("检测到目录环路")
                visited.add(child.id)
                child_node = ItemNode(item=child)
                node.children.append(child_node)
                if child.is_folder:
                    stack.append((child_node, depth + 1))
        return roots

    def get_breadcrumbs(self, db: Session, *, item_id: int, owner_id: str) -> List[Item]:
        """返回从根到目标的条目链，目标自身为最后一个元素。"""
        crumbs: List[Item] = []
        seen: set[int] = set()
        current_id: Optional[int] = item_id
        while current_id is not None:
            if current_id in seen or len(crumbs) >= self._max_depth:
                raise TreeConsistencyError("祖先链存在环路或层级超过上限")
            seen.add(current_id)
            item = self.find_one(db, item_id=current_id, owner_id=owner_id)
            crumbs.append(item)
            current_id = item.parent_id
        crumbs.reverse()
        return crumbs

    def get_storage_usage(self, db: Session, *, owner_id: str) -> Dict[str, int]:
        total, count = self._store.usage_by_owner(db, owner_id=owner_id)
        return {"total": total, "count": count}

    # ----------------------------
    # 重命名 / 移动
    # ----------------------------
    def update(self, db: Session, *, item_id: int, owner_id: str, changes: Mapping[str, Any]) -> Item:
        """重命名或移动条目；``changes`` 中出现 ``parent_id`` 键（None 表示移到根）才视为移动。"""
        with self._lock.hold(owner_id):
            try:
                item = self.find_one(db, item_id=item_id, owner_id=owner_id)
                old_path = item.path
                new_parent: Optional[Item] = None

                if "parent_id" in changes:
                    new_parent_id = changes["parent_id"]
                    if new_parent_id is not None:
                        if new_parent_id == item.id:
                            raise InvalidOperationError("不能将条目移动到自身")
                        new_parent = self._get_parent_folder(db, owner_id=owner_id, parent_id=new_parent_id)
                        if item.is_folder:
                            self._ensure_not_descendant(db, owner_id=owner_id, item=item, new_parent=new_parent)
                    item.parent_id = new_parent_id

                if changes.get("name") is not None:
                    item.name = normalize_item_name(changes["name"])

                if item.parent_id is None:
                    parent_path = None
                elif new_parent is not None:
                    parent_path = new_parent.path
                else:
                    current_parent = self._store.get_owned(db, item_id=item.parent_id, owner_id=owner_id)
                    if current_parent is None:
                        raise TreeConsistencyError("父文件夹记录缺失")
                    parent_path = current_parent.path
                item.path = build_item_path(item.name, parent_path)
                self._store.update(db, item, auto_commit=False)

                if item.is_folder and item.path != old_path:
                    updated = self._cascade_paths(db, owner_id=owner_id, root=item)
                    logger.info("Cascaded path change %s -> %s to %s descendants", old_path, item.path, updated)
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(item)

        logger.info("Item updated: owner=%s id=%s path=%s", owner_id, item.id, item.path)
        return item

    # ----------------------------
    # 删除
    # ----------------------------
    def remove(self, db: Session, *, item_id: int, owner_id: str) -> int:
        """级联删除条目及其全部子孙，提交后逐个释放文件对象；返回删除的条目数。"""
        with self._lock.hold(owner_id):
            try:
                item = self.find_one(db, item_id=item_id, owner_id=owner_id)
                doomed = self._collect_post_order(db, owner_id=owner_id, root=item)
                storage_keys = [n.storage_key for n in doomed if n.kind == ItemKind.FILE and n.storage_key]
                for node in doomed:
                    self._store.hard_delete(db, node, auto_commit=False)
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info("Item removed: owner=%s id=%s (%s items, %s objects)", owner_id, item_id, len(doomed), len(storage_keys))
        self._release_objects(storage_keys)
        return len(doomed)

    # ----------------------------
    # 内部工具
    # ----------------------------
    def _get_parent_folder(self, db: Session, *, owner_id: str, parent_id: int) -> Item:
        parent = self._store.get_owned(db, item_id=parent_id, owner_id=owner_id)
        if parent is None:
            raise ItemNotFoundError("父文件夹不存在")
        if not parent.is_folder:
            raise InvalidOperationError("父节点必须是文件夹")
        return parent

    def _ensure_not_descendant(self, db: Session, *, owner_id: str, item: Item, new_parent: Item) -> None:
        """沿新父节点的祖先链向上查找，遇到被移动的条目即拒绝。"""
        current: Optional[Item] = new_parent
        steps = 0
        while current is not None:
            if current.id == item.id:
                raise InvalidOperationError("不能将文件夹移动到其自身的子文件夹中")
            if current.parent_id is None:
                return
            steps += 1
            if steps > self._max_depth:
                raise TreeConsistencyError("祖先链存在环路或层级超过上限")
            current = self._store.get_owned(db, item_id=current.parent_id, owner_id=owner_id)

    def _cascade_paths(self, db: Session, *, owner_id: str, root: Item) -> int:
        updated = 0
        visited = {root.id}
        stack = [(root, 1)]
        while stack:
            folder, depth = stack.pop()
            if depth > self._max_depth:
                raise TreeConsistencyError("目录层级超过上限")
            for child in self._store.list_by_parent(db, owner_id=owner_id, parent_id=folder.id):
                if child.id in visited:
                    raise TreeConsistencyError("检测到目录环路")
                visited.add(child.id)
                child.path = build_item_path(child.name, folder.path)
                self._store.update(db, child, auto_commit=False)
                updated += 1
                if child.is_folder:
                    stack.append((child, depth + 1))
        return updated

    def _collect_post_order(self, db: Session, *, owner_id: str, root: Item) -> List[Item]:
        # 先序收集后整体反转：每个节点都排在其全部子孙之后
        pre_order: List[Item] = []
        visited = {root.id}
        stack = [(root, 1)]
        while stack:
            node, depth = stack.pop()
            pre_order.append(node)
            if not node.is_folder:
                continue
            if depth > self._max_depth:
                raise TreeConsistencyError("目录层级超过上限")
            for child in self._store.list_by_parent(db, owner_id=owner_id, parent_id=node.id):
                if child.id in visited:
                    raise TreeConsistencyError("检测到目录环路")
                visited.add(child.id)
                stack.append((child, depth + 1))
        pre_order.reverse()
        return pre_order

    def _release_objects(self, storage_keys: List[str]) -> None:
        failed: List[str] = []
        for key in storage_keys:
            try:
                self._gateway.delete_object(key=key)
                logger.info("Released storage object: %s", key)
            except StorageGatewayError:
                logger.exception("Failed to release storage object: %s", key)
                failed.append(key)
        if failed:
            raise StorageGatewayError("部分文件对象释放失败", data={"storageKeys": failed})
