"""常量定义：集中维护状态码与业务限制，避免魔法数字散落各处。"""

from fastapi import status

HTTP_STATUS_OK = status.HTTP_200_OK
HTTP_STATUS_CREATED = status.HTTP_201_CREATED
HTTP_STATUS_BAD_REQUEST = status.HTTP_400_BAD_REQUEST
HTTP_STATUS_NOT_FOUND = status.HTTP_404_NOT_FOUND
HTTP_STATUS_CONFLICT = status.HTTP_409_CONFLICT
HTTP_STATUS_BAD_GATEWAY = status.HTTP_502_BAD_GATEWAY
HTTP_STATUS_INTERNAL_SERVER_ERROR = status.HTTP_500_INTERNAL_SERVER_ERROR

# 身份网关注入的所有者标识请求头
OWNER_ID_HEADER = "X-Owner-Id"

ITEM_NAME_MAX_LENGTH = 255
OWNER_ID_MAX_LENGTH = 64
ITEM_PATH_MAX_LENGTH = 4096
STORAGE_KEY_MAX_LENGTH = 1024

DEFAULT_MIME_TYPE = "application/octet-stream"

# S3 分片上传的分片编号范围
MULTIPART_MIN_PART_NUMBER = 1
MULTIPART_MAX_PART_NUMBER = 10000
