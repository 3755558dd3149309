"""
测试公共夹具：可计数的提供商、可观测的缓存与存储、K 线构造函数
"""

import asyncio
import os
import sys
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from market_service.exceptions import StoreUnavailable  # noqa: E402
from market_service.layers.acquisition import ProviderClient, ProviderRouter, RetryPolicy  # noqa: E402
from market_service.layers.cache import CacheLayer, MemoryCacheBackend  # noqa: E402
from market_service.layers.resolution import PriceResolver  # noqa: E402
from market_service.layers.store import MemoryPriceStore  # noqa: E402
from market_service.models.market import PriceBar, Quote  # noqa: E402


def utc_today() -> date:
    return datetime.now(tz=timezone.utc).date()


def make_daily_bars(symbol: str, end: date, n: int, start_price: float = 100.0) -> List[PriceBar]:
    """以 end 为最后一天、逐日向前生成 n 根日线"""
    bars = []
    for i in range(n):
        d = end - timedelta(days=n - 1 - i)
        close = round(start_price + i, 2)
        bars.append(PriceBar(
            symbol=symbol, date=d,
            open=close - 0.5, high=close + 1, low=close - 1, close=close, volume=1000 + i,
        ))
    return bars


def make_hourly_bars(symbol: str, day: date, hours=range(14, 21), start_price: float = 50.0) -> List[PriceBar]:
    return [
        PriceBar(
            symbol=symbol, date=day,
            timestamp=datetime.combine(day, time(h), tzinfo=timezone.utc),
            open=start_price + i, high=start_price + i + 1, low=start_price + i - 1,
            close=start_price + i + 0.5, volume=10,
        )
        for i, h in enumerate(hours)
    ]


class FakeProvider(ProviderClient):
    """
    可编排的提供商：range_errors 中的异常按顺序先抛出，耗尽后返回 bars；
    delay > 0 时每次取数前等待，用于并发测试。
    """

    name = "fake"

    def __init__(
        self,
        bars: Optional[List[PriceBar]] = None,
        snapshot: Optional[Quote] = None,
        range_errors: Optional[list] = None,
        snapshot_error: Optional[Exception] = None,
        always_fail: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.bars = bars or []
        self.snapshot = snapshot
        self.range_errors = list(range_errors or [])
        self.snapshot_error = snapshot_error
        self.always_fail = always_fail
        self.delay = delay
        self.range_calls = 0
        self.snapshot_calls = 0
        self.cancelled = False
        self.closed = False

    async def fetch_range(self, symbol, start, end, intraday=False):
        self.range_calls += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.always_fail is not None:
            raise self.always_fail
        if self.range_errors:
            raise self.range_errors.pop(0)
        return list(self.bars)

    async def fetch_snapshot(self, symbol):
        self.snapshot_calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.snapshot_error is not None:
            raise self.snapshot_error
        if self.snapshot is None:
            from market_service.exceptions import ProviderUnavailable
            raise ProviderUnavailable("no snapshot")
        return self.snapshot

    async def close(self):
        self.closed = True


class SpyCacheBackend(MemoryCacheBackend):
    """记录每次读写的进程内缓存"""

    def __init__(self):
        super().__init__(maxsize=128)
        self.gets: List[str] = []
        self.sets: List[tuple] = []

    async def get(self, key):
        self.gets.append(key)
        return await super().get(key)

    async def set(self, key, value, ttl):
        self.sets.append((key, value, ttl))
        await super().set(key, value, ttl)


class SpyStore(MemoryPriceStore):
    """记录查询次数；broken=True 时所有操作抛出 StoreUnavailable"""

    def __init__(self, broken: bool = False):
        super().__init__()
        self.broken = broken
        self.queries = 0
        self.upserts = 0

    async def query_range(self, symbol, start, end, want_intraday=False):
        self.queries += 1
        if self.broken:
            raise StoreUnavailable("store down")
        return await super().query_range(symbol, start, end, want_intraday)

    async def upsert_bars(self, symbol, bars):
        self.upserts += 1
        if self.broken:
            raise StoreUnavailable("store down")
        return await super().upsert_bars(symbol, bars)

    async def query_metadata(self, symbol):
        if self.broken:
            raise StoreUnavailable("store down")
        return await super().query_metadata(symbol)

    async def upsert_metadata(self, metadata):
        if self.broken:
            raise StoreUnavailable("store down")
        await super().upsert_metadata(metadata)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def build_resolver(provider: ProviderClient, store=None, cache_backend=None, sleep=None) -> PriceResolver:
    return PriceResolver(
        cache=CacheLayer(cache_backend or SpyCacheBackend(), timeout=1.0),
        store=store if store is not None else SpyStore(),
        router=ProviderRouter({}, default=provider),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=8.0, attempt_timeout=5.0),
        store_timeout=1.0,
        sleep=sleep or SleepRecorder(),
    )


@pytest.fixture
def today() -> date:
    return utc_today()


@pytest.fixture
def cache_backend() -> SpyCacheBackend:
    return SpyCacheBackend()


@pytest.fixture
def store() -> SpyStore:
    return SpyStore()
