"""
外部连接管理模块
统一管理 Redis（异步，缓存层）与 MongoDB（异步，STORE_BACKEND=mongodb 时的存储层）连接
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from market_service.config import settings

logger = logging.getLogger(__name__)

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """初始化 MongoDB 异步连接，返回是否成功"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info(f"存储后端为 {settings.STORE_BACKEND}，跳过 MongoDB 初始化")
        return False
    try:
        _mongo_client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        )
        _mongo_db = _mongo_client[settings.MONGODB_DATABASE]
        await _mongo_client.admin.command("ping")
        logger.info(f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
        return True
    except PyMongoError as exc:
        logger.warning(f"⚠️ MongoDB 连接失败（存储层不可用，解析降级为仅提供商）: {exc}")
        if _mongo_client:
            _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        return False


async def init_redis() -> bool:
    """初始化 Redis 异步连接，返回是否成功"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，缓存使用进程内 TTL 缓存")
        return False
    try:
        _redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=settings.CACHE_TIMEOUT,
            socket_timeout=settings.CACHE_TIMEOUT * 2,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
        await _redis_client.ping()
        logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return True
    except (RedisError, OSError) as exc:
        logger.warning(f"⚠️ Redis 连接失败（缓存降级为进程内 TTL 缓存）: {exc}")
        if _redis_pool:
            await _redis_pool.disconnect()
        _redis_client = None
        _redis_pool = None
        return False


async def close_connections():
    """关闭所有外部连接"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB 连接已关闭")
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """获取 MongoDB 数据库实例（可能为 None）"""
    return _mongo_db


def get_redis() -> Optional[Redis]:
    """获取 Redis 客户端（可能为 None）"""
    return _redis_client


async def _probe(ping, host: str, errors) -> dict:
    """执行一次 ping，返回状态字典"""
    try:
        await ping()
    except errors as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "host": host}


async def check_health() -> dict:
    """检查外部连接健康状态；未启用的组件报告 disabled"""
    result = {
        "mongodb": {"status": "disabled"},
        "redis": {"status": "disabled"},
    }
    if _mongo_client:
        result["mongodb"] = await _probe(
            lambda: _mongo_client.admin.command("ping"), settings.MONGODB_HOST, PyMongoError
        )
    elif settings.MONGODB_ENABLED:
        result["mongodb"] = {"status": "disconnected"}

    if _redis_client:
        result["redis"] = await _probe(_redis_client.ping, settings.REDIS_HOST, (RedisError, OSError))
    elif settings.REDIS_ENABLED:
        result["redis"] = {"status": "disconnected"}

    return result
