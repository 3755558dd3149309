"""
自选股路由
GET  /api/watchlist/chart/{symbol}   - 图表数据（逐点涨跌）
POST /api/watchlist/prices           - 批量现价
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from market_service.layers.processing import get_processing_layer
from market_service.layers.resolution import PriceResolver
from market_service.models.response import ApiResponse
from market_service.services.aggregation_service import AggregationService, get_aggregation_service
from market_service.services.price_service import get_price_resolver

router = APIRouter(prefix="/api/watchlist", tags=["自选股"])


class WatchlistPricesRequest(BaseModel):
    symbols: List[str] = Field(default_factory=list, max_length=200)


@router.get("/chart/{symbol}", response_model=ApiResponse)
async def watchlist_chart(
    symbol: str,
    time_range: str = Query("1Y", alias="timeRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """自选股图表：收盘价序列及逐点涨跌额 / 涨跌幅"""
    resolution = await resolver.resolve_symbol(symbol, time_range, start_date, end_date)
    return ApiResponse.ok(
        data={
            "symbol": resolution.symbol,
            "range": resolution.time_range.value,
            "current_price": resolution.current_price,
            "change": resolution.change,
            "change_percent": resolution.change_percent,
            "source": resolution.source.value,
            "available": resolution.available,
            "points": get_processing_layer().to_chart_points(resolution.series),
        },
        stale=resolution.is_degraded,
    )


@router.post("/prices", response_model=ApiResponse)
async def watchlist_prices(
    body: WatchlistPricesRequest,
    service: AggregationService = Depends(get_aggregation_service),
):
    items = await service.price_watchlist(body.symbols)
    return ApiResponse.ok(data=items, stale=any(i["stale"] for i in items))
