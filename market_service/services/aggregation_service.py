"""
聚合视图服务
持仓估值、自选股报价、市场概览、涨跌榜。
每个代码独立解析、并发受限，单个代码失败只影响它自己的条目。
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from market_service.config import settings
from market_service.layers.resolution import PriceResolver
from market_service.models.market import Holding, InstrumentType, PriceSummary, ResolutionSource
from market_service.services.price_service import get_price_resolver
from market_service.symbols import (
    category_for,
    classify_symbol,
    display_name,
    is_valid_symbol,
    normalize_symbol,
)

logger = logging.getLogger(__name__)


def _unique(symbols: Iterable[str]) -> List[str]:
    seen = []
    for raw in symbols:
        symbol = normalize_symbol(raw)
        if symbol and symbol not in seen:
            seen.append(symbol)
    return seen


class AggregationService:
    """基于价格解析管线的批量视图"""

    def __init__(self, resolver: PriceResolver, concurrency: int = None):
        self._resolver = resolver
        self._semaphore = asyncio.Semaphore(concurrency or settings.AGGREGATION_CONCURRENCY)

    async def _summary(self, symbol: str) -> PriceSummary:
        async with self._semaphore:
            return await self._resolver.resolve_current_only(symbol)

    async def summaries(self, symbols: Iterable[str]) -> Dict[str, PriceSummary]:
        """并发解析现价；非法代码与解析异常都记为不可用"""
        ordered = _unique(symbols)
        valid = [s for s in ordered if is_valid_symbol(s)]
        results = await asyncio.gather(*(self._summary(s) for s in valid), return_exceptions=True)

        by_symbol = {s: PriceSummary.unavailable(s) for s in ordered}
        for symbol, result in zip(valid, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"⚠️ {symbol} 现价解析失败: {result!r}")
                by_symbol[symbol] = PriceSummary.unavailable(symbol, display_name(symbol))
            else:
                by_symbol[symbol] = result
        return by_symbol

    # ── 自选股 ────────────────────────────────────────────

    async def price_watchlist(self, symbols: Iterable[str]) -> List[Dict[str, Any]]:
        summaries = await self.summaries(symbols)
        return [
            {**s.model_dump(mode="json"), "stale": s.source is ResolutionSource.DEGRADED}
            for s in summaries.values()
        ]

    # ── 持仓估值 ──────────────────────────────────────────

    async def value_portfolio(self, holdings: List[Holding]) -> Dict[str, Any]:
        """
        持仓估值：市值、成本、浮动盈亏、当日涨跌

        价格不可用的持仓市值、盈亏与当日涨跌按 0 计；其成本计入 total_cost，
        但不参与 total_gain，单独列在 unpriced_cost。
        """
        summaries = await self.summaries(h.symbol for h in holdings)
        rows = []
        total_value = total_cost = unpriced_cost = today_change = previous_value = 0.0

        for holding in holdings:
            symbol = normalize_symbol(holding.symbol)
            summary = summaries.get(symbol) or PriceSummary.unavailable(symbol)
            price = summary.current_price
            cost = holding.shares * holding.avg_price
            value = holding.shares * price if price is not None else 0.0
            day_change = holding.shares * summary.change if price is not None else 0.0
            gain = value - cost if price is not None else 0.0

            total_value += value
            total_cost += cost
            if price is None:
                unpriced_cost += cost
            today_change += day_change
            previous_value += value - day_change
            rows.append({
                "symbol": symbol,
                "name": summary.name,
                "shares": holding.shares,
                "avg_price": holding.avg_price,
                "current_price": price,
                "market_value": round(value, 4),
                "cost_basis": round(cost, 4),
                "gain": round(gain, 4),
                "gain_percent": round(gain / cost * 100, 4) if cost and price is not None else 0.0,
                "day_change": round(day_change, 4),
                "day_change_percent": summary.change_percent if price is not None else 0.0,
                "stale": summary.source is ResolutionSource.DEGRADED,
            })

        priced_cost = total_cost - unpriced_cost
        total_gain = total_value - priced_cost
        return {
            "holdings": rows,
            "total_value": round(total_value, 4),
            "total_cost": round(total_cost, 4),
            "unpriced_cost": round(unpriced_cost, 4),
            "total_gain": round(total_gain, 4),
            "total_gain_percent": round(total_gain / priced_cost * 100, 4) if priced_cost else 0.0,
            "today_change": round(today_change, 4),
            "today_change_percent": round(today_change / previous_value * 100, 4) if previous_value else 0.0,
            "stale": any(r["stale"] for r in rows),
        }

    # ── 市场概览 ──────────────────────────────────────────

    async def market_overview(self, symbols: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        summaries = await self.summaries(symbols or settings.MARKET_OVERVIEW_SYMBOLS)
        tiles = []
        for symbol, summary in summaries.items():
            kind = classify_symbol(symbol)
            tiles.append({
                **summary.model_dump(mode="json"),
                "type": kind.value,
                "category": category_for(kind),
                "stale": summary.source is ResolutionSource.DEGRADED,
            })
        return tiles

    # ── 涨跌榜 ────────────────────────────────────────────

    async def market_movers(self, limit: int = None, symbols: Optional[List[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """股票与加密货币的涨幅榜 / 跌幅榜，现价不可用的代码不参与排序"""
        limit = limit or settings.MOVERS_LIMIT
        summaries = await self.summaries(symbols or settings.MARKET_MOVERS_SYMBOLS)

        stocks, cryptos = [], []
        for symbol, summary in summaries.items():
            if summary.current_price is None:
                continue
            entry = {
                "symbol": symbol,
                "name": summary.name,
                "price": summary.current_price,
                "change": summary.change,
                "change_percent": summary.change_percent,
            }
            if classify_symbol(symbol) is InstrumentType.CRYPTO:
                cryptos.append(entry)
            else:
                stocks.append(entry)

        def gainers(entries):
            up = [e for e in entries if e["change_percent"] > 0]
            return sorted(up, key=lambda e: e["change_percent"], reverse=True)[:limit]

        def losers(entries):
            down = [e for e in entries if e["change_percent"] < 0]
            return sorted(down, key=lambda e: e["change_percent"])[:limit]

        return {
            "stock_gainers": gainers(stocks),
            "stock_losers": losers(stocks),
            "crypto_gainers": gainers(cryptos),
            "crypto_losers": losers(cryptos),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_aggregation: Optional[AggregationService] = None


def get_aggregation_service() -> AggregationService:
    global _aggregation
    if _aggregation is None:
        _aggregation = AggregationService(get_price_resolver())
    return _aggregation


def reset_aggregation_service() -> None:
    global _aggregation
    _aggregation = None
