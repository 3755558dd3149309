"""
价格服务装配
根据配置组装缓存层、存储层与提供商路由，得到进程级唯一的 PriceResolver
"""

import logging
from typing import Optional

from market_service.config import settings
from market_service.db import get_mongo_db, get_redis
from market_service.exceptions import StoreUnavailable
from market_service.layers.acquisition import (
    CoinGeckoProvider,
    ProviderRouter,
    RetryPolicy,
    SyntheticProvider,
    YFinanceProvider,
)
from market_service.layers.cache import (
    CacheLayer,
    MemoryCacheBackend,
    RedisCacheBackend,
)
from market_service.layers.resolution import PriceResolver
from market_service.layers.store import (
    MemoryPriceStore,
    MongoPriceStore,
    PriceStore,
    SQLitePriceStore,
)
from market_service.models.market import InstrumentType

logger = logging.getLogger(__name__)


def build_cache_layer() -> CacheLayer:
    """Redis 可用时使用 Redis，否则使用进程内 TTL 缓存"""
    redis = get_redis()
    if redis is not None:
        backend = RedisCacheBackend(redis)
    else:
        backend = MemoryCacheBackend(maxsize=settings.MEMORY_CACHE_MAXSIZE)
    logger.info(f"缓存后端: {backend.name}")
    return CacheLayer(backend, timeout=settings.CACHE_TIMEOUT)


def build_price_store() -> PriceStore:
    backend = settings.STORE_BACKEND.lower()
    if backend == "mongodb":
        store: PriceStore = MongoPriceStore(get_mongo_db)
    elif backend == "memory":
        store = MemoryPriceStore()
    else:
        store = SQLitePriceStore(settings.SQLITE_PATH, busy_timeout=settings.STORE_TIMEOUT)
    logger.info(f"存储后端: {store.name}")
    return store


def build_provider_router() -> ProviderRouter:
    if settings.PROVIDER_MODE.lower() == "synthetic":
        logger.info("提供商模式: synthetic（合成数据）")
        return ProviderRouter({}, default=SyntheticProvider())

    yahoo = YFinanceProvider()
    coingecko = CoinGeckoProvider(
        base_url=settings.COINGECKO_BASE_URL,
        api_key=settings.COINGECKO_API_KEY,
        timeout=settings.PROVIDER_TIMEOUT,
    )
    logger.info("提供商模式: live（yfinance + CoinGecko）")
    return ProviderRouter(
        {
            InstrumentType.EQUITY: yahoo,
            InstrumentType.ETF: yahoo,
            InstrumentType.INDEX: yahoo,
            InstrumentType.COMMODITY: yahoo,
            InstrumentType.CRYPTO: coingecko,
        },
        default=yahoo,
    )


# ── 模块级别单例 ──────────────────────────────────────────
_resolver: Optional[PriceResolver] = None


def get_price_resolver() -> PriceResolver:
    global _resolver
    if _resolver is None:
        _resolver = PriceResolver(
            cache=build_cache_layer(),
            store=build_price_store(),
            router=build_provider_router(),
            retry_policy=RetryPolicy.from_settings(),
            store_timeout=settings.STORE_TIMEOUT,
        )
    return _resolver


async def init_price_resolver() -> PriceResolver:
    """启动时组装解析管线并初始化存储（失败不阻断启动）"""
    resolver = get_price_resolver()
    try:
        await resolver.store.init()
    except StoreUnavailable as exc:
        logger.warning(f"⚠️ 存储初始化失败（解析降级为仅提供商）: {exc}")
    return resolver


async def close_price_resolver() -> None:
    global _resolver
    if _resolver is not None:
        await _resolver.close()
        _resolver = None
