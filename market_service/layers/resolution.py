"""
Layer 4 – 价格解析层
按 缓存 → 存储 → 提供商 的优先级解析现价与历史序列，
沿途回写存储与缓存；任一层故障时降级而不是报错。
"""

import asyncio
import logging
from datetime import date
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from market_service.config import settings
from market_service.exceptions import InvalidRequest, ProviderError, StoreUnavailable
from market_service.layers.acquisition import ProviderClient, ProviderRouter, RetryPolicy, with_backoff
from market_service.layers.cache import CacheLayer
from market_service.layers.policy import (
    CURRENT_SESSION_FRESHNESS,
    build_request,
    cache_ttl,
    last_session_date,
)
from market_service.layers.processing import get_processing_layer
from market_service.layers.store import PriceStore
from market_service.models.market import (
    AssetMetadata,
    PriceBar,
    PriceSummary,
    Quote,
    Resolution,
    ResolutionRequest,
    ResolutionSource,
    TimeRange,
)
from market_service.symbols import default_metadata, display_name

logger = logging.getLogger(__name__)

RESOLVE_NAMESPACE = "resolve"
QUOTE_NAMESPACE = "quote"

# 仅现价：取近 5 日日线，两根即可得到现价与昨收
_QUOTE_THRESHOLD = 2


def derive_price_change(
    series: List[PriceBar], snapshot: Optional[Quote] = None
) -> Tuple[Optional[float], Optional[float], float, float]:
    """
    计算 (现价, 昨收, 涨跌额, 涨跌幅%)

    现价优先取快照，否则取最后一根 K 线收盘价；
    昨收取倒数第二根收盘价，只有一根时等于现价（涨跌为 0），
    序列为空时取快照自带的昨收。
    """
    current = snapshot.price if snapshot is not None else None
    if current is None and series:
        current = series[-1].close
    if current is None:
        return None, None, 0.0, 0.0

    if len(series) >= 2:
        previous = series[-2].close
    elif len(series) == 1:
        previous = current
    else:
        previous = snapshot.previous_close if snapshot is not None else None

    if previous is None:
        return current, None, 0.0, 0.0
    change = current - previous
    percent = change / previous * 100 if previous else 0.0
    return current, previous, round(change, 6), round(percent, 6)


def _enrich_metadata(metadata: AssetMetadata, snapshot: Optional[Quote]) -> AssetMetadata:
    if snapshot is None:
        return metadata
    update = {}
    if snapshot.name:
        update["display_name"] = display_name(metadata.symbol, snapshot.name)
    if snapshot.exchange:
        update["exchange"] = snapshot.exchange
    if snapshot.currency:
        update["currency"] = snapshot.currency.upper()
    return metadata.model_copy(update=update) if update else metadata


class _Flight:
    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


class PriceResolver:
    """价格解析管线"""

    def __init__(
        self,
        cache: CacheLayer,
        store: Optional[PriceStore],
        router: ProviderRouter,
        retry_policy: Optional[RetryPolicy] = None,
        store_timeout: float = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.cache = cache
        self.store = store
        self.router = router
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT
        self._sleep = sleep
        self._processor = get_processing_layer()
        self._inflight: Dict[str, _Flight] = {}

    # ── 对外接口 ──────────────────────────────────────────

    async def resolve(self, request: ResolutionRequest) -> Resolution:
        if request.start > request.end:
            raise InvalidRequest(f"开始日期 {request.start} 晚于结束日期 {request.end}")

        parts = request.cache_parts()
        cached = await self.cache.get(RESOLVE_NAMESPACE, *parts)
        if cached is not None:
            try:
                resolution = Resolution.model_validate(cached)
            except ValidationError:
                logger.warning(f"缓存结构不匹配，视为未命中: {':'.join(parts)}")
            else:
                return resolution.model_copy(update={"source": ResolutionSource.CACHE})

        key = ":".join(parts)
        return await self._single_flight(key, lambda: self._resolve_uncached(request))

    async def resolve_symbol(
        self,
        symbol: str,
        time_range: Union[str, TimeRange, None] = TimeRange.M1,
        start_date: Union[str, date, None] = None,
        end_date: Union[str, date, None] = None,
    ) -> Resolution:
        return await self.resolve(build_request(symbol, time_range, start_date, end_date))

    async def resolve_current_only(self, symbol: str) -> PriceSummary:
        """列表视图使用的现价解析，独立的短 TTL 缓存键"""
        request = build_request(symbol, TimeRange.D5).model_copy(
            update={"want_intraday": False, "threshold": _QUOTE_THRESHOLD}
        )
        cached = await self.cache.get(QUOTE_NAMESPACE, request.symbol)
        if cached is not None:
            try:
                summary = PriceSummary.model_validate(cached)
            except ValidationError:
                logger.warning(f"报价缓存结构不匹配，视为未命中: {request.symbol}")
            else:
                return summary.model_copy(update={"source": ResolutionSource.CACHE})

        resolution = await self.resolve(request)
        name = resolution.metadata.display_name if resolution.metadata else display_name(request.symbol)
        summary = PriceSummary(
            symbol=request.symbol,
            name=name,
            current_price=resolution.current_price,
            change=resolution.change,
            change_percent=resolution.change_percent,
            source=resolution.source,
        )
        if not resolution.is_degraded and summary.current_price is not None:
            await self.cache.set(
                summary.model_dump(mode="json"),
                QUOTE_NAMESPACE,
                request.symbol,
                ttl=settings.QUOTE_CACHE_TTL,
            )
        return summary

    async def close(self) -> None:
        for flight in list(self._inflight.values()):
            flight.task.cancel()
        self._inflight.clear()
        await self.router.close()
        if self.store is not None:
            await self.store.close()

    # ── 同键并发合并 ──────────────────────────────────────

    async def _single_flight(self, key: str, factory: Callable[[], Awaitable[Resolution]]) -> Resolution:
        flight = self._inflight.get(key)
        if flight is None:
            flight = _Flight(asyncio.ensure_future(factory()))
            self._inflight[key] = flight
            flight.task.add_done_callback(lambda _t, k=key, f=flight: self._forget(k, f))
        else:
            logger.debug(f"合并并发解析: {key}")

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            # 所有等待方都已取消时才取消共享任务
            if flight.waiters == 0 and not flight.task.done():
                self._forget(key, flight)
                flight.task.cancel()

    def _forget(self, key: str, flight: _Flight) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]

    # ── 管线 ──────────────────────────────────────────────

    async def _resolve_uncached(self, request: ResolutionRequest) -> Resolution:
        symbol = request.symbol
        store_ok = self.store is not None
        stored: List[PriceBar] = []

        if store_ok:
            want_intraday = request.want_intraday and self.store.supports_intraday
            try:
                rows = await asyncio.wait_for(
                    self.store.query_range(symbol, request.start, request.end, want_intraday),
                    self._store_timeout,
                )
                stored = self._processor.merge_series(rows)
            except (StoreUnavailable, asyncio.TimeoutError) as exc:
                logger.warning(f"⚠️ 存储查询失败，改为直接请求提供商: {symbol}: {exc!r}")
                store_ok = False

        usable = self._usable_bars(request, stored)
        if self._store_sufficient(request, usable):
            logger.info(f"存储命中 {symbol} {request.time_range.value}: {len(usable)} 条")
            metadata = await self._ensure_metadata(symbol, None, store_ok)
            resolution = self._build(request, usable, None, ResolutionSource.STORE, metadata)
            await self._write_cache(request, resolution)
            return resolution

        # 降级时优先返回与请求粒度一致的存储序列
        stored = usable or stored
        provider = self.router.route(symbol)
        try:
            fetched = await self._call(provider.fetch_range, symbol, request.start, request.end, intraday=request.want_intraday)
        except ProviderError as exc:
            logger.warning(
                f"⚠️ 提供商 {provider.name} 获取失败，返回降级结果 {symbol}"
                f"（存储 {len(stored)} 条）: {exc}"
            )
            metadata = await self._ensure_metadata(symbol, None, store_ok) if stored else default_metadata(symbol)
            return self._build(request, stored, None, ResolutionSource.DEGRADED, metadata)

        snapshot = await self._fetch_snapshot(provider, symbol)
        fetched = self._processor.filter_date_range(
            self._processor.merge_series(fetched), request.start, request.end
        )

        if fetched:
            if store_ok:
                await self._persist(symbol, fetched)
            series, source = fetched, ResolutionSource.PROVIDER
        else:
            logger.warning(f"提供商 {provider.name} 未返回 {symbol} 的数据，沿用存储序列（{len(stored)} 条）")
            series, source = stored, ResolutionSource.DEGRADED

        if series or snapshot is not None:
            metadata = await self._ensure_metadata(symbol, snapshot, store_ok)
        else:
            metadata = default_metadata(symbol)
        resolution = self._build(request, series, snapshot, source, metadata)
        await self._write_cache(request, resolution)
        return resolution

    @staticmethod
    def _usable_bars(request: ResolutionRequest, stored: List[PriceBar]) -> List[PriceBar]:
        """分时请求只认分时 K 线，日线不计入充分性"""
        if request.want_intraday:
            return [b for b in stored if b.is_intraday]
        return stored

    @staticmethod
    def _store_sufficient(request: ResolutionRequest, bars: List[PriceBar]) -> bool:
        if len(bars) < request.threshold:
            return False
        if request.freshness in CURRENT_SESSION_FRESHNESS:
            session = last_session_date(request.symbol, request.end)
            if bars[-1].date < session:
                logger.info(
                    f"存储数据过旧 {request.symbol}: 最新 {bars[-1].date}，需覆盖 {session}"
                )
                return False
        return True

    async def _call(self, func, *args, **kwargs):
        return await with_backoff(self._retry, sleep=self._sleep)(func)(*args, **kwargs)

    async def _fetch_snapshot(self, provider: ProviderClient, symbol: str) -> Optional[Quote]:
        try:
            return await self._call(provider.fetch_snapshot, symbol)
        except ProviderError as exc:
            logger.info(f"现价快照获取失败，使用最后收盘价: {symbol}: {exc}")
            return None

    async def _persist(self, symbol: str, bars: List[PriceBar]) -> None:
        if not self.store.supports_intraday:
            bars = [b for b in bars if not b.is_intraday]
        try:
            count = await asyncio.wait_for(self.store.upsert_bars(symbol, bars), self._store_timeout)
            logger.info(f"写入存储 {symbol}: {count} 条")
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(f"⚠️ 写入存储失败 {symbol}: {exc!r}")

    async def _ensure_metadata(
        self, symbol: str, snapshot: Optional[Quote], store_ok: bool
    ) -> AssetMetadata:
        fallback = _enrich_metadata(default_metadata(symbol), snapshot)
        if not store_ok:
            return fallback
        try:
            existing = await asyncio.wait_for(self.store.query_metadata(symbol), self._store_timeout)
            metadata = _enrich_metadata(existing, snapshot) if existing else fallback
            if metadata != existing:
                await asyncio.wait_for(self.store.upsert_metadata(metadata), self._store_timeout)
            return metadata
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(f"资产元数据读写失败，使用默认值 {symbol}: {exc!r}")
            return fallback

    def _build(
        self,
        request: ResolutionRequest,
        series: List[PriceBar],
        snapshot: Optional[Quote],
        source: ResolutionSource,
        metadata: Optional[AssetMetadata],
    ) -> Resolution:
        current, previous, change, percent = derive_price_change(series, snapshot)
        return Resolution(
            symbol=request.symbol,
            time_range=request.time_range,
            start=request.start,
            end=request.end,
            current_price=current,
            previous_close=previous,
            change=change,
            change_percent=percent,
            series=series,
            source=source,
            metadata=metadata,
        )

    async def _write_cache(self, request: ResolutionRequest, resolution: Resolution) -> None:
        if resolution.is_degraded:
            return
        await self.cache.set(
            resolution.model_dump(mode="json"),
            RESOLVE_NAMESPACE,
            *request.cache_parts(),
            ttl=cache_ttl(request.freshness),
        )
