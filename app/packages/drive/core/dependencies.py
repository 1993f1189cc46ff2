"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数。

服务对象按请求显式构造，只持有配置与协作者句柄；需要跨请求共享的
网关客户端与所有者锁由带缓存的工厂提供，测试中可通过 dependency_overrides 替换。
"""

from collections.abc import Generator
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.constants import OWNER_ID_HEADER, OWNER_ID_MAX_LENGTH
from app.packages.drive.core.locks import OwnerLock, build_owner_lock
from app.packages.drive.core.logger import set_owner_id
from app.packages.drive.db import session as db_session
from app.packages.drive.services.storage_gateway import ObjectStorageGateway, build_storage_gateway
from app.packages.drive.services.tree_service import TreeService
from app.packages.drive.services.upload_service import UploadService


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_owner_id(owner_id: Optional[str] = Header(None, alias=OWNER_ID_HEADER)) -> str:
    """读取身份网关注入的所有者标识；此处不做任何凭证校验。

    声明为协程，使写入的日志上下文对同一请求后续的同步处理函数可见。
    """
    value = (owner_id or "").strip()
    if not value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少所有者标识")
    if "/" in value or len(value) > OWNER_ID_MAX_LENGTH:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="所有者标识无效")
    set_owner_id(value)
    return value


@lru_cache
def get_storage_gateway() -> ObjectStorageGateway:
    return build_storage_gateway(get_settings())


@lru_cache
def get_owner_lock() -> OwnerLock:
    return build_owner_lock(get_settings())


def get_tree_service(
    gateway: ObjectStorageGateway = Depends(get_storage_gateway),
    lock: OwnerLock = Depends(get_owner_lock),
    settings: Settings = Depends(get_settings),
) -> TreeService:
    return TreeService(gateway=gateway, lock=lock, max_depth=settings.tree_max_depth)


def get_upload_service(
    tree: TreeService = Depends(get_tree_service),
    gateway: ObjectStorageGateway = Depends(get_storage_gateway),
    settings: Settings = Depends(get_settings),
) -> UploadService:
    return UploadService(tree=tree, gateway=gateway, settings=settings)
