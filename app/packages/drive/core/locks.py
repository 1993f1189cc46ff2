"""所有者级互斥锁：串行化同一所有者下的子树级联变更。

移动/重命名/删除文件夹会逐个改写子孙节点，两个重叠的级联若交错执行，
子孙路径可能与祖先链不一致。级联期间持有所有者锁，并在单个数据库事务内完成。
部署环境使用 Redis 锁跨进程生效；测试或单进程部署使用进程内锁。
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator

import redis
from redis.exceptions import LockError

from app.packages.drive.core.config import Settings
from app.packages.drive.core.exceptions import TreeBusyError
from app.packages.drive.core.logger import logger


class OwnerLock:
    """锁后端基类，``hold`` 在持有期间执行代码块。"""

    def hold(self, owner_id: str) -> ContextManager[None]:  # pragma: no cover - interface definition
        raise NotImplementedError


class RedisOwnerLock(OwnerLock):
    """基于 Redis 的分布式锁，键名为 ``item-tree:{owner_id}``。"""

    def __init__(self, url: str, *, timeout: int, blocking_timeout: float) -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @contextmanager
    def hold(self, owner_id: str) -> Iterator[None]:
        lock = self._client.lock(
            self._build_key(owner_id),
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        if not lock.acquire():
            raise TreeBusyError()
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # 锁已超时自动释放，级联可能超过了 LOCK_TIMEOUT_SECONDS
                logger.warning("Tree lock for owner %s expired before release", owner_id)

    @staticmethod
    def _build_key(owner_id: str) -> str:
        return f"item-tree:{owner_id}"


class InMemoryOwnerLock(OwnerLock):
    """进程内锁，每个所有者一把 ``threading.Lock``。"""

    def __init__(self, *, blocking_timeout: float) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._blocking_timeout = blocking_timeout

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[owner_id] = lock
            return lock

    @contextmanager
    def hold(self, owner_id: str) -> Iterator[None]:
        lock = self._lock_for(owner_id)
        if not lock.acquire(timeout=self._blocking_timeout):
            raise TreeBusyError()
        try:
            yield
        finally:
            lock.release()


def build_owner_lock(settings: Settings) -> OwnerLock:
    """按 ``LOCK_BACKEND`` 构造锁后端。"""
    backend = settings.lock_backend
    if backend == "redis":
        lock = RedisOwnerLock(
            settings.redis_url,
            timeout=settings.lock_timeout_seconds,
            blocking_timeout=settings.lock_blocking_timeout_seconds,
        )
        logger.info("Tree lock initialized with Redis at %s", settings.redis_url)
        return lock
    if backend == "memory":
        return InMemoryOwnerLock(blocking_timeout=settings.lock_blocking_timeout_seconds)
    raise ValueError(f"不支持的锁后端: {settings.lock_backend}")
