"""
持仓路由
POST /api/portfolio/valuation   - 持仓估值
"""

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from market_service.models.market import Holding
from market_service.models.response import ApiResponse
from market_service.services.aggregation_service import AggregationService, get_aggregation_service

router = APIRouter(prefix="/api/portfolio", tags=["持仓"])


class ValuationRequest(BaseModel):
    holdings: List[Holding] = Field(default_factory=list, max_length=500)


@router.post("/valuation", response_model=ApiResponse)
async def portfolio_valuation(
    body: ValuationRequest,
    service: AggregationService = Depends(get_aggregation_service),
):
    """持仓估值（市值、成本、浮动盈亏、当日涨跌）"""
    valuation = await service.value_portfolio(body.holdings)
    return ApiResponse.ok(data=valuation, stale=valuation["stale"])
