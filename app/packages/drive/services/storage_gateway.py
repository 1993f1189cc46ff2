"""对象存储网关：统一封装对象存储的控制面操作（S3 兼容，boto3 实现）。

本服务只负责签发预签名 URL 与分片会话管理，不经手数据字节：
客户端拿到 URL 后直接与对象存储交互。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.packages.drive.core.config import Settings
from app.packages.drive.core.constants import DEFAULT_MIME_TYPE
from app.packages.drive.core.exceptions import StorageGatewayError
from app.packages.drive.core.logger import logger

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


# ------------------------------------------
# 公共数据结构
# ------------------------------------------

@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: str
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class UploadedPart:
    part_number: int
    etag: str


class ObjectStorageGateway:
    """对象存储网关接口。"""

    def put_object(self, *, key: str, body: bytes, content_type: str) -> str:
        raise NotImplementedError

    def head_object(self, *, key: str) -> Optional[ObjectInfo]:
        """返回对象元数据；对象不存在时返回 ``None``。"""
        raise NotImplementedError

    def delete_object(self, *, key: str) -> None:
        """删除对象；对象本就不存在视为成功。"""
        raise NotImplementedError

    def presign_upload(self, *, key: str, content_type: str, expires_in: int) -> str:
        raise NotImplementedError

    def presign_download(self, *, key: str, expires_in: int, filename: Optional[str] = None) -> str:
        raise NotImplementedError

    def create_multipart_upload(self, *, key: str, content_type: str) -> str:
        raise NotImplementedError

    def presign_upload_part(self, *, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        raise NotImplementedError

    def complete_multipart_upload(self, *, key: str, upload_id: str, parts: Sequence[UploadedPart]) -> None:
        raise NotImplementedError

    def abort_multipart_upload(self, *, key: str, upload_id: str) -> None:
        raise NotImplementedError


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3StorageGateway(ObjectStorageGateway):
    def __init__(self, *, client, bucket: str):
        self._client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3StorageGateway":
        client = boto3.client(
            "s3",
            region_name=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url or None,
            aws_access_key_id=settings.s3_access_key_id or None,
            aws_secret_access_key=settings.s3_secret_access_key or None,
        )
        return cls(client=client, bucket=settings.s3_bucket_name)

    def put_object(self, *, key: str, body: bytes, content_type: str) -> str:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 put_object failed: %s", key)
            raise StorageGatewayError(f"文件上传失败: {exc}") from exc
        return key

    def head_object(self, *, key: str) -> Optional[ObjectInfo]:
        try:
            resp = self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            logger.exception("S3 head_object failed: %s", key)
            raise StorageGatewayError(f"查询对象信息失败: {exc}") from exc
        except BotoCoreError as exc:
            logger.exception("S3 head_object failed: %s", key)
            raise StorageGatewayError(f"查询对象信息失败: {exc}") from exc
        return ObjectInfo(
            key=key,
            size=int(resp.get("ContentLength") or 0),
            content_type=resp.get("ContentType") or DEFAULT_MIME_TYPE,
            etag=resp.get("ETag"),
            last_modified=resp.get("LastModified"),
        )

    def delete_object(self, *, key: str) -> None:
        # S3 对不存在的 key 同样返回 204，删除天然幂等
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return
            raise StorageGatewayError(f"删除对象失败: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageGatewayError(f"删除对象失败: {exc}") from exc

    def _presign(self, operation: str, params: dict, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(operation, Params=params, ExpiresIn=expires_in)
        except (ClientError, BotoCoreError) as exc:
            raise StorageGatewayError(f"预签名 URL 生成失败: {exc}") from exc

    def presign_upload(self, *, key: str, content_type: str, expires_in: int) -> str:
        params = {"Bucket": self.bucket, "Key": key, "ContentType": content_type}
        return self._presign("put_object", params, expires_in)

    def presign_download(self, *, key: str, expires_in: int, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f"attachment; filename=\"{filename}\""
        return self._presign("get_object", params, expires_in)

    def create_multipart_upload(self, *, key: str, content_type: str) -> str:
        try:
            resp = self._client.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 create_multipart_upload failed: %s", key)
            raise StorageGatewayError(f"分片上传初始化失败: {exc}") from exc
        return resp["UploadId"]

    def presign_upload_part(self, *, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        params = {"Bucket": self.bucket, "Key": key, "UploadId": upload_id, "PartNumber": part_number}
        return self._presign("upload_part", params, expires_in)

    def complete_multipart_upload(self, *, key: str, upload_id: str, parts: Sequence[UploadedPart]) -> None:
        payload: List[dict] = [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]
        try:
            self._client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": payload},
            )
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 complete_multipart_upload failed: %s (%s)", key, upload_id)
            raise StorageGatewayError(f"分片上传合并失败: {exc}") from exc

    def abort_multipart_upload(self, *, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as exc:
            # 会话已被存储端清理时视为已取消
            if _error_code(exc) == "NoSuchUpload":
                logger.warning("Multipart upload already gone: %s (%s)", key, upload_id)
                return
            raise StorageGatewayError(f"取消分片上传失败: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageGatewayError(f"取消分片上传失败: {exc}") from exc


def build_storage_gateway(settings: Settings) -> ObjectStorageGateway:
    if not settings.s3_bucket_name:
        raise StorageGatewayError("对象存储配置不完整：缺少 S3_BUCKET_NAME")
    return S3StorageGateway.from_settings(settings)
