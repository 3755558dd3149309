"""
市场行情路由
GET /api/market/overview   - 指数 / 加密货币 / 商品概览
GET /api/market/movers     - 涨跌榜
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_service.models.response import ApiResponse
from market_service.services.aggregation_service import AggregationService, get_aggregation_service

router = APIRouter(prefix="/api/market", tags=["市场行情"])


@router.get("/overview", response_model=ApiResponse)
async def market_overview(service: AggregationService = Depends(get_aggregation_service)):
    tiles = await service.market_overview()
    return ApiResponse.ok(data=tiles, stale=any(t["stale"] for t in tiles))


@router.get("/movers", response_model=ApiResponse)
async def market_movers(
    limit: Optional[int] = Query(None, ge=1, le=100),
    service: AggregationService = Depends(get_aggregation_service),
):
    """股票与加密货币涨跌榜"""
    movers = await service.market_movers(limit)
    return ApiResponse.ok(data=movers)
