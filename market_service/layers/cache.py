"""
Layer 2 – 缓存层
后端二选一：Redis（多进程共享） / 进程内 TTL 缓存（Redis 不可用时）
缓存失败永远不致命：记录日志后视为未命中，由下一层继续解析
"""

import asyncio
import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import namedtuple
from typing import Any, Callable, Optional

from cachetools import TLRUCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

from market_service.config import settings
from market_service.exceptions import CacheUnavailable

logger = logging.getLogger(__name__)


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


class CacheBackend(ABC):
    """键值缓存后端接口：get / set-with-TTL"""

    name: str = "cache"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """读取，未命中返回 None；后端故障抛出 CacheUnavailable"""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """写入并设置过期秒数；后端故障抛出 CacheUnavailable"""

    async def stats(self) -> dict:
        return {"backend": self.name}


class RedisCacheBackend(CacheBackend):
    name = "redis"

    def __init__(self, client: Redis):
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise CacheUnavailable(f"Redis 读取失败: {exc}") from exc
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._client.setex(key, ttl, value)
        except RedisError as exc:
            raise CacheUnavailable(f"Redis 写入失败: {exc}") from exc

    async def stats(self) -> dict:
        try:
            return {"backend": self.name, "keys": await self._client.dbsize(), "status": "healthy"}
        except RedisError as exc:
            return {"backend": self.name, "status": "error", "error": str(exc)}


_Entry = namedtuple("_Entry", "value ttl")


def _time_to_use(_key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class MemoryCacheBackend(CacheBackend):
    """进程内 TTL 缓存，按条目过期；读写由互斥锁保护"""

    name = "memory"

    def __init__(self, maxsize: int = None, timer: Callable[[], float] = time.monotonic):
        self._entries = TLRUCache(
            maxsize=maxsize or settings.MEMORY_CACHE_MAXSIZE,
            ttu=_time_to_use,
            timer=timer,
        )
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._entries[key] = _Entry(value, ttl)

    async def stats(self) -> dict:
        with self._lock:
            self._entries.expire()
            size = len(self._entries)
        return {
            "backend": self.name,
            "keys": size,
            "maxsize": self._entries.maxsize,
            "status": "healthy",
        }


class CacheLayer:
    """缓存层：负责键生成、JSON 序列化、超时控制，并吞掉后端故障"""

    def __init__(self, backend: CacheBackend, timeout: float = None):
        self._backend = backend
        self._timeout = timeout if timeout is not None else settings.CACHE_TIMEOUT

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def get(self, namespace: str, *parts: str) -> Optional[Any]:
        key = _make_key(namespace, *parts)
        try:
            raw = await asyncio.wait_for(self._backend.get(key), self._timeout)
        except (CacheUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(f"缓存读取失败（{self._backend.name}），跳过缓存: {key}: {exc!r}")
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning(f"缓存内容无法解析，视为未命中: {key}")
            return None
        logger.debug(f"缓存命中（{self._backend.name}）: {key}")
        return value

    async def set(
        self,
        value: Any,
        namespace: str,
        *parts: str,
        ttl: int = None,
    ) -> bool:
        if ttl is None:
            ttl = settings.SHORT_CACHE_TTL
        key = _make_key(namespace, *parts)
        serialized = json.dumps(value, ensure_ascii=False, default=str)
        try:
            await asyncio.wait_for(self._backend.set(key, serialized, ttl), self._timeout)
        except (CacheUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(f"缓存写入失败（{self._backend.name}）: {key}: {exc!r}")
            return False
        logger.debug(f"缓存写入（{self._backend.name}）: {key} ttl={ttl}s")
        return True

    async def stats(self) -> dict:
        return await self._backend.stats()
