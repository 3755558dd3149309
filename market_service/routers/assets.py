"""
资产详情路由
GET /api/assets/{symbol}         - 区间序列 + 现价 + 元数据
GET /api/assets/{symbol}/quote   - 仅现价
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_service.layers.resolution import PriceResolver
from market_service.models.market import Resolution, ResolutionSource
from market_service.models.response import ApiResponse
from market_service.services.price_service import get_price_resolver

router = APIRouter(prefix="/api/assets", tags=["资产详情"])


def resolution_payload(resolution: Resolution) -> dict:
    data = resolution.model_dump(mode="json")
    data["available"] = resolution.available
    data["count"] = len(resolution.series)
    return data


@router.get("/{symbol}", response_model=ApiResponse)
async def get_asset(
    symbol: str,
    time_range: str = Query("1M", alias="range", description="1D/5D/1W/1M/3M/6M/YTD/1Y/3Y/5Y/10Y/MAX"),
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD，优先于 range"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """资产详情"""
    resolution = await resolver.resolve_symbol(symbol, time_range, start_date, end_date)
    if not resolution.available:
        return ApiResponse.ok(
            data=resolution_payload(resolution),
            message="暂无数据",
            stale=resolution.is_degraded,
        )
    return ApiResponse.ok(data=resolution_payload(resolution), stale=resolution.is_degraded)


@router.get("/{symbol}/quote", response_model=ApiResponse)
async def get_quote(symbol: str, resolver: PriceResolver = Depends(get_price_resolver)):
    summary = await resolver.resolve_current_only(symbol)
    data = summary.model_dump(mode="json")
    data["available"] = summary.current_price is not None
    return ApiResponse.ok(data=data, stale=summary.source is ResolutionSource.DEGRADED)
