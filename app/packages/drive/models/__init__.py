"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.drive.models.item import Item, ItemKind
from app.packages.drive.models.upload_session import UploadSession, UploadStatus

__all__ = [
    "Item",
    "ItemKind",
    "UploadSession",
    "UploadStatus",
]
