"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
"""

from fastapi import APIRouter, Depends

from market_service.layers.resolution import PriceResolver
from market_service.models.response import ApiResponse
from market_service.services.price_service import get_price_resolver

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(resolver: PriceResolver = Depends(get_price_resolver)):
    """获取缓存后端统计信息（后端类型、键数量）"""
    stats = await resolver.cache.stats()
    return ApiResponse.ok(data=stats)
