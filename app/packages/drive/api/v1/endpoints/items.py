"""文件树条目路由：增删改查、树展开、上传与下载链接。

路由层只负责参数解析与响应封装，业务异常由全局处理器统一转换。
静态路径（/items/tree、/items/upload-url 等）需注册在 /items/{item_id} 之前。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.items import (
    ItemCreateBody,
    ItemListResponse,
    ItemMutationResponse,
    ItemResponse,
    ItemUpdateBody,
    MultipartAbortBody,
    MultipartCompleteBody,
    MultipartInitiateBody,
    MultipartPartUrlBody,
    UploadCompleteBody,
    UploadUrlBody,
    item_to_dict,
    node_to_dict,
)
from app.packages.drive.core.constants import HTTP_STATUS_CREATED
from app.packages.drive.core.dependencies import (
    get_current_owner_id,
    get_db,
    get_tree_service,
    get_upload_service,
)
from app.packages.drive.core.exceptions import InvalidOperationError
from app.packages.drive.core.responses import create_response
from app.packages.drive.services.storage_gateway import UploadedPart
from app.packages.drive.services.tree_service import TreeService
from app.packages.drive.services.upload_service import UploadService

router = APIRouter(prefix="/items", tags=["items"])

_ROOT_MARKERS = {"", "null", "root"}


def _parse_parent_filter(raw: Optional[str]) -> Dict[str, Any]:
    """``parentId`` 未传时不过滤；传空串/null/root 表示根目录。"""
    if raw is None:
        return {}
    value = raw.strip()
    if value.lower() in _ROOT_MARKERS:
        return {"parent_id": None}
    try:
        return {"parent_id": int(value)}
    except ValueError as exc:
        raise InvalidOperationError("parentId 必须为整数或 root") from exc


# ----------------------------
# 条目创建与查询
# ----------------------------
@router.post("", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
def create_item(
    body: ItemCreateBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    item = tree.create(
        db,
        owner_id=owner_id,
        name=body.name,
        kind=body.type,
        parent_id=body.parentId,
        mime_type=body.mimeType,
    )
    return create_response("创建成功", item_to_dict(item), HTTP_STATUS_CREATED)


@router.get("", response_model=ItemListResponse)
def list_items(
    parent_id: Optional[str] = Query(None, alias="parentId"),
    item_type: Optional[str] = Query(None, alias="type", pattern=r"^(file|folder)$"),
    search: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    filters: Dict[str, Any] = _parse_parent_filter(parent_id)
    if item_type:
        filters["kind"] = item_type
    if search:
        filters["search"] = search
    items = tree.find_all(db, owner_id=owner_id, filters=filters)
    return create_response("获取条目列表成功", [item_to_dict(it) for it in items])


@router.get("/tree", response_model=ItemListResponse)
def get_tree(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    roots = tree.get_tree(db, owner_id=owner_id)
    return create_response("获取目录树成功", [node_to_dict(node) for node in roots])


@router.get("/storage-usage", response_model=ItemResponse)
def get_storage_usage(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    return create_response("获取存储用量成功", tree.get_storage_usage(db, owner_id=owner_id))


# ----------------------------
# 单次上传
# ----------------------------
@router.post("/upload-url", response_model=ItemResponse)
def create_upload_url(
    body: UploadUrlBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    result = uploads.create_upload_url(
        db,
        owner_id=owner_id,
        filename=body.filename,
        content_type=body.contentType,
        parent_id=body.parentId,
    )
    data = {
        "uploadUrl": result["upload_url"],
        "storageKey": result["storage_key"],
        "expiresIn": result["expires_in"],
    }
    return create_response("获取上传链接成功", data)


@router.post("/upload-complete", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
def complete_upload(
    body: UploadCompleteBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    item = uploads.complete_upload(
        db,
        owner_id=owner_id,
        filename=body.filename,
        storage_key=body.storageKey,
        parent_id=body.parentId,
        mime_type=body.mimeType,
    )
    return create_response("上传成功", item_to_dict(item), HTTP_STATUS_CREATED)


# ----------------------------
# 分片上传
# ----------------------------
@router.post("/multipart/initiate", response_model=ItemResponse)
def initiate_multipart(
    body: MultipartInitiateBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    result = uploads.initiate_multipart(
        db,
        owner_id=owner_id,
        filename=body.filename,
        content_type=body.contentType,
        parent_id=body.parentId,
    )
    return create_response(
        "分片上传初始化成功",
        {"uploadId": result["upload_id"], "storageKey": result["storage_key"]},
    )


@router.post("/multipart/part-url", response_model=ItemResponse)
def multipart_part_url(
    body: MultipartPartUrlBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    result = uploads.multipart_part_url(
        db,
        owner_id=owner_id,
        storage_key=body.storageKey,
        upload_id=body.uploadId,
        part_number=body.partNumber,
    )
    data = {"url": result["url"], "partNumber": result["part_number"], "expiresIn": result["expires_in"]}
    return create_response("获取分片上传链接成功", data)


@router.post("/multipart/complete", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
def complete_multipart(
    body: MultipartCompleteBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    item = uploads.complete_multipart(
        db,
        owner_id=owner_id,
        storage_key=body.storageKey,
        upload_id=body.uploadId,
        parts=[UploadedPart(part_number=p.partNumber, etag=p.etag) for p in body.parts],
        filename=body.filename,
        parent_id=body.parentId,
        mime_type=body.mimeType,
    )
    return create_response("分片上传完成", item_to_dict(item), HTTP_STATUS_CREATED)


@router.post("/multipart/abort", response_model=ItemMutationResponse)
def abort_multipart(
    body: MultipartAbortBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    uploads.abort_multipart(db, owner_id=owner_id, storage_key=body.storageKey, upload_id=body.uploadId)
    return create_response("分片上传已取消")


# ----------------------------
# 单个条目
# ----------------------------
@router.get("/{item_id}", response_model=ItemResponse)
def get_item(
    item_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    item = tree.find_one(db, item_id=item_id, owner_id=owner_id)
    return create_response("获取条目成功", item_to_dict(item))


@router.get("/{item_id}/children", response_model=ItemResponse)
def get_item_with_children(
    item_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    node = tree.find_with_children(db, item_id=item_id, owner_id=owner_id)
    return create_response("获取条目成功", node_to_dict(node))


@router.get("/{item_id}/breadcrumbs", response_model=ItemListResponse)
def get_breadcrumbs(
    item_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    crumbs = tree.get_breadcrumbs(db, item_id=item_id, owner_id=owner_id)
    return create_response("获取路径成功", [item_to_dict(it) for it in crumbs])


@router.get("/{item_id}/download-url", response_model=ItemResponse)
def create_download_url(
    item_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    uploads: UploadService = Depends(get_upload_service),
):
    result = uploads.create_download_url(db, owner_id=owner_id, item_id=item_id)
    return create_response("获取下载链接成功", {"url": result["url"], "expiresIn": result["expires_in"]})


@router.patch("/{item_id}", response_model=ItemResponse)
def update_item(
    item_id: int,
    body: ItemUpdateBody,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    changes: Dict[str, Any] = {}
    if "name" in body.model_fields_set and body.name is not None:
        changes["name"] = body.name
    if "parentId" in body.model_fields_set:
        changes["parent_id"] = body.parentId
    item = tree.update(db, item_id=item_id, owner_id=owner_id, changes=changes)
    return create_response("更新成功", item_to_dict(item))


@router.delete("/{item_id}", response_model=ItemMutationResponse)
def delete_item(
    item_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    removed = tree.remove(db, item_id=item_id, owner_id=owner_id)
    return create_response("删除成功", {"removed": removed})
