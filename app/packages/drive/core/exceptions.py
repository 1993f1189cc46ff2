"""异常处理模块：定义统一的业务异常与响应格式。

文件树相关的错误按语义细分为若干子类，全部继承 ``AppException``，
因此路由层无需逐个捕获，由全局处理器统一转换为 ``{msg, data, code}``。
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_GATEWAY,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_INTERNAL_SERVER_ERROR,
    HTTP_STATUS_NOT_FOUND,
)
from app.packages.drive.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data

    @property
    def msg(self) -> str:
        return str(self.detail)


class ItemNotFoundError(AppException):
    """条目不存在或不属于当前所有者（两种情况对外不可区分）。"""

    def __init__(self, msg: str = "条目不存在", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_NOT_FOUND, data)


class ItemConflictError(AppException):
    """同一目录下已存在同名条目。"""

    def __init__(self, msg: str = "当前位置已存在同名文件或文件夹", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT, data)


class InvalidOperationError(AppException):
    """结构约束不允许的操作：移动到自身/子孙、父节点不是文件夹等。"""

    def __init__(self, msg: str, data=None) -> None:
        super().__init__(msg, HTTP_STATUS_BAD_REQUEST, data)


class StorageInconsistencyError(AppException):
    """确认上传时对象存储中找不到对应对象。"""

    def __init__(self, msg: str = "对象存储中不存在该文件", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT, data)


class StorageGatewayError(AppException):
    """对象存储调用失败或拒绝请求。"""

    def __init__(self, msg: str = "对象存储服务调用失败", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_BAD_GATEWAY, data)


class TreeBusyError(AppException):
    """在等待时间内未能获得所有者的目录树锁。"""

    def __init__(self, msg: str = "目录树正在被其他操作修改，请稍后重试", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT, data)


class TreeConsistencyError(AppException):
    """检测到环路或超出深度上限，说明持久化数据已损坏。"""

    def __init__(self, msg: str = "目录树数据不一致", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_INTERNAL_SERVER_ERROR, data)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    if exc.status_code >= HTTP_STATUS_INTERNAL_SERVER_ERROR:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.detail)
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": HTTP_STATUS_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=HTTP_STATUS_INTERNAL_SERVER_ERROR, content=payload)
