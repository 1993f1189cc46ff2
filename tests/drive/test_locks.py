"""所有者锁测试：同一所有者互斥、不同所有者互不阻塞、超时返回忙碌错误。"""

import threading

import pytest
from redis.exceptions import LockError

from app.packages.drive.core import locks
from app.packages.drive.core.config import Settings
from app.packages.drive.core.exceptions import TreeBusyError
from app.packages.drive.core.locks import InMemoryOwnerLock, RedisOwnerLock, build_owner_lock


def test_in_memory_lock_times_out_for_same_owner():
    lock = InMemoryOwnerLock(blocking_timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with lock.hold("owner-1"):
            held.set()
            release.wait(2)

    worker = threading.Thread(target=holder)
    worker.start()
    held.wait(2)
    try:
        with pytest.raises(TreeBusyError):
            with lock.hold("owner-1"):
                pass
        # 其他所有者不受影响
        with lock.hold("owner-2"):
            pass
    finally:
        release.set()
        worker.join()

    with lock.hold("owner-1"):
        pass


def test_build_owner_lock_rejects_unknown_backend():
    assert isinstance(build_owner_lock(Settings(LOCK_BACKEND="memory")), InMemoryOwnerLock)
    with pytest.raises(ValueError):
        build_owner_lock(Settings(LOCK_BACKEND="zookeeper"))


class _StubRedisLock:
    def __init__(self, acquired: bool, expired: bool = False) -> None:
        self.acquired = acquired
        self.expired = expired
        self.released = False

    def acquire(self):
        return self.acquired

    def release(self):
        if self.expired:
            raise LockError("lock expired")
        self.released = True


class _StubRedis:
    def __init__(self, lock: _StubRedisLock) -> None:
        self._lock = lock
        self.names = []

    def ping(self):
        return True

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.names.append(name)
        return self._lock


def _redis_lock(monkeypatch, stub_lock):
    client = _StubRedis(stub_lock)
    monkeypatch.setattr(locks.redis.Redis, "from_url", lambda url, **kwargs: client)
    return RedisOwnerLock("redis://localhost:6379/0", timeout=5, blocking_timeout=0.1), client


def test_redis_lock_uses_owner_scoped_key(monkeypatch):
    stub_lock = _StubRedisLock(acquired=True)
    lock, client = _redis_lock(monkeypatch, stub_lock)
    with lock.hold("owner-1"):
        pass
    assert client.names == ["item-tree:owner-1"]
    assert stub_lock.released


def test_redis_lock_busy_and_expired(monkeypatch):
    lock, _ = _redis_lock(monkeypatch, _StubRedisLock(acquired=False))
    with pytest.raises(TreeBusyError):
        with lock.hold("owner-1"):
            pass

    # 锁已过期时释放失败只记录告警，不影响已完成的操作
    lock, _ = _redis_lock(monkeypatch, _StubRedisLock(acquired=True, expired=True))
    with lock.hold("owner-1"):
        pass
