"""文件树 - 条目与上传相关的请求/响应模型。"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope
from app.packages.drive.core.timezone import format_datetime
from app.packages.drive.models.item import Item
from app.packages.drive.services.tree_service import ItemNode


class ItemCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = Field(..., pattern=r"^(file|folder)$")
    parentId: Optional[int] = None
    mimeType: Optional[str] = None


class ItemUpdateBody(BaseModel):
    """未出现的字段保持不变；显式传 ``parentId: null`` 表示移到根目录。"""

    name: Optional[str] = None
    parentId: Optional[int] = None


class UploadUrlBody(BaseModel):
    filename: str = Field(..., min_length=1)
    contentType: Optional[str] = None
    parentId: Optional[int] = None


class UploadCompleteBody(BaseModel):
    filename: str = Field(..., min_length=1)
    storageKey: str = Field(..., min_length=1)
    parentId: Optional[int] = None
    mimeType: Optional[str] = None


class MultipartInitiateBody(BaseModel):
    filename: str = Field(..., min_length=1)
    contentType: Optional[str] = None
    parentId: Optional[int] = None


class MultipartPartUrlBody(BaseModel):
    storageKey: str
    uploadId: str
    partNumber: int


class MultipartPart(BaseModel):
    # 兼容 S3 原始写法 PartNumber / ETag
    partNumber: int = Field(..., validation_alias=AliasChoices("partNumber", "PartNumber"))
    etag: str = Field(..., validation_alias=AliasChoices("etag", "ETag"))


class MultipartCompleteBody(BaseModel):
    storageKey: str
    uploadId: str
    parts: list[MultipartPart] = Field(default_factory=list)
    filename: Optional[str] = None
    parentId: Optional[int] = None
    mimeType: Optional[str] = None


class MultipartAbortBody(BaseModel):
    storageKey: str
    uploadId: str


ItemResponse = ResponseEnvelope[dict]
ItemListResponse = ResponseEnvelope[list]
ItemMutationResponse = ResponseEnvelope[Any]


def item_to_dict(item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "type": item.kind.value,
        "parentId": item.parent_id,
        "ownerId": item.owner_id,
        "path": item.path,
        "size": item.size,
        "mimeType": item.mime_type,
        "storageKey": item.storage_key,
        "createdAt": format_datetime(item.create_time),
        "updatedAt": format_datetime(item.update_time),
    }


def node_to_dict(node: ItemNode) -> dict[str, Any]:
    """序列化带子节点的条目；文件节点不输出 ``children``。使用显式栈，深层目录不受递归上限影响。"""
    root = item_to_dict(node.item)
    stack = [(node, root)]
    while stack:
        current, data = stack.pop()
        if current.children is None:
            continue
        data["children"] = []
        for child in current.children:
            child_data = item_to_dict(child.item)
            data["children"].append(child_data)
            stack.append((child, child_data))
    return root
