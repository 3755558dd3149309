"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from market_service import __version__
from market_service.db import check_health
from market_service.layers.resolution import PriceResolver
from market_service.services.price_service import get_price_resolver

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(resolver: PriceResolver = Depends(get_price_resolver)):
    """服务健康检查：外部连接 + 缓存与存储后端"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Market Dashboard MarketService",
            "databases": db_health,
            "cache": await resolver.cache.stats(),
            "store": await resolver.store.stats() if resolver.store else {"status": "disabled"},
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
