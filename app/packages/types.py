"""业务包元数据定义。"""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic_settings import BaseSettings

ExceptionHandler = Callable[[Request, Exception], Awaitable[JSONResponse]]


@dataclass(frozen=True)
class AppPackage:
    """描述一个业务包暴露给主应用的必要接口。

    主应用只依赖这里列出的入口：挂载路由、初始化日志与数据表、注册异常处理器。
    """

    name: str
    api_router: APIRouter
    get_settings: Callable[[], BaseSettings]
    setup_logging: Callable[[], None]
    logger: Logger
    init_db: Callable[[], None]
    create_response: Callable[..., dict[str, Any]]
    http_exception_handler: ExceptionHandler
    generic_exception_handler: ExceptionHandler
