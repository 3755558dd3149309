"""
行情服务单元测试

覆盖范围：
  - 配置模块（服务发现、环境变量解析、存储后端）
  - 代码规则（规范化、分类、展示名称）
  - 区间策略（阈值、TTL、自定义区间校验）
  - 数据处理层（标准化、合并、图表数据点）
  - 缓存层（键生成、TTL 过期、后端故障不致命）
  - API 响应模型
  - FastAPI 路由（通过 TestClient，不需要真实数据库与网络）
"""

import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pandas as pd
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import (
    FakeProvider,
    SpyStore,
    build_resolver,
    make_daily_bars,
    make_hourly_bars,
)
from market_service.exceptions import CacheUnavailable, InvalidRequest, ProviderUnavailable
from market_service.models.market import FreshnessClass, InstrumentType, TimeRange


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        """默认配置不依赖外部服务即可实例化"""
        from market_service.config import MarketServiceSettings
        s = MarketServiceSettings()
        assert s.PORT == 8001
        assert s.MONGODB_DATABASE == "market_dashboard"
        assert s.SHORT_CACHE_TTL == 300

    def test_mongodb_enabled_follows_store_backend(self):
        from market_service.config import MarketServiceSettings
        assert MarketServiceSettings(STORE_BACKEND="mongodb").MONGODB_ENABLED is True
        assert MarketServiceSettings(STORE_BACKEND="sqlite").MONGODB_ENABLED is False

    def test_mongo_uri_with_auth(self):
        from market_service.config import MarketServiceSettings
        s = MarketServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="mydb",
        )
        assert "user:pass@db-host:27017/mydb" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from market_service.config import MarketServiceSettings
        s = MarketServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_docker_service_discovery(self):
        """Docker 环境下默认使用服务名而非 localhost"""
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from market_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"


# ─────────────────────────────────────────────────────────
# 2. 代码规则
# ─────────────────────────────────────────────────────────

class TestSymbols:
    def test_normalize(self):
        from market_service.symbols import normalize_symbol
        assert normalize_symbol(" aapl ") == "AAPL"
        assert normalize_symbol("x:BTCUSD") == "X:BTCUSD"
        assert normalize_symbol(None) == ""

    def test_classify(self):
        from market_service.symbols import classify_symbol
        assert classify_symbol("X:BTCUSD") is InstrumentType.CRYPTO
        assert classify_symbol("ETH-USD") is InstrumentType.CRYPTO
        assert classify_symbol("^GSPC") is InstrumentType.INDEX
        assert classify_symbol("XAUUSD") is InstrumentType.COMMODITY
        assert classify_symbol("CL=F") is InstrumentType.COMMODITY
        assert classify_symbol("SPY") is InstrumentType.ETF
        assert classify_symbol("AAPL") is InstrumentType.EQUITY

    def test_display_name(self):
        from market_service.symbols import display_name
        assert display_name("AAPL", "Apple Inc.") == "Apple"
        assert display_name("X:BTCUSD") == "Bitcoin"
        assert display_name("^DJI") == "Dow Jones"
        assert display_name("ZZZZ") == "ZZZZ"

    def test_default_metadata(self):
        from market_service.symbols import default_metadata
        meta = default_metadata("X:ETHUSD")
        assert meta.instrument_type is InstrumentType.CRYPTO
        assert meta.category == "crypto"
        assert meta.exchange == "CRYPTO"


# ─────────────────────────────────────────────────────────
# 3. 区间策略
# ─────────────────────────────────────────────────────────

class TestPolicy:
    TODAY = date(2024, 3, 15)

    def test_named_range(self):
        from market_service.layers.policy import build_request
        req = build_request("aapl", "1M", today=self.TODAY)
        assert req.symbol == "AAPL"
        assert req.start == date(2024, 2, 14)
        assert req.end == self.TODAY
        assert req.threshold == 20
        assert req.freshness is FreshnessClass.SHORT
        assert req.want_intraday is False
        assert req.cache_parts() == ["AAPL", "1M", "1d"]

    def test_one_day_is_intraday(self):
        from market_service.layers.policy import build_request
        req = build_request("BTC-USD", "1d", today=self.TODAY)
        assert req.want_intraday is True
        assert req.freshness is FreshnessClass.INTRADAY
        assert req.cache_parts()[-1] == "1h"

    def test_last_session_skips_weekends_for_equities(self):
        from market_service.layers.policy import last_session_date
        assert last_session_date("AAPL", date(2024, 3, 17)) == date(2024, 3, 15)
        assert last_session_date("AAPL", self.TODAY) == self.TODAY
        assert last_session_date("X:BTCUSD", date(2024, 3, 17)) == date(2024, 3, 17)

    def test_ytd_threshold_from_span(self):
        from market_service.layers.policy import build_request
        req = build_request("AAPL", "YTD", today=self.TODAY)
        assert req.start == date(2024, 1, 1)
        assert req.threshold == 40
        assert req.freshness is FreshnessClass.MEDIUM

    def test_custom_range_overrides_named(self):
        from market_service.layers.policy import build_request
        req = build_request("AAPL", "1Y", start_date="2024-03-10", end_date="2024-03-14", today=self.TODAY)
        assert req.time_range is TimeRange.CUSTOM
        assert req.want_intraday is True
        assert req.threshold == 2
        assert req.cache_parts() == ["AAPL", "CUSTOM", "2024-03-10", "2024-03-14", "1h"]

    def test_future_end_is_clamped(self):
        from market_service.layers.policy import build_request
        req = build_request("AAPL", start_date="2024-01-01", end_date="2030-01-01", today=self.TODAY)
        assert req.end == self.TODAY

    @pytest.mark.parametrize("kwargs", [
        {"symbol": "AAPL", "start_date": "2024-03-10", "end_date": "2024-03-01"},
        {"symbol": "AAPL", "end_date": "2024-03-01"},
        {"symbol": "AAPL", "start_date": "03/01/2024"},
        {"symbol": "AAPL", "time_range": "2W"},
        {"symbol": "   "},
        {"symbol": "AA PL"},
    ])
    def test_invalid_requests(self, kwargs):
        from market_service.layers.policy import build_request
        with pytest.raises(InvalidRequest):
            build_request(today=self.TODAY, **kwargs)

    def test_cache_ttl_by_freshness(self):
        from market_service.layers.policy import cache_ttl
        assert cache_ttl(FreshnessClass.INTRADAY) == 120
        assert cache_ttl(FreshnessClass.SHORT) == 300
        assert cache_ttl(FreshnessClass.MEDIUM) == 1800
        assert cache_ttl(FreshnessClass.LONG) == 3600


# ─────────────────────────────────────────────────────────
# 4. 数据处理层
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        from market_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_frame_empty(self):
        assert self.proc.frame_to_bars(pd.DataFrame(), "AAPL") == []

    def test_frame_drops_rows_without_close(self):
        df = pd.DataFrame(
            {"open": [1.0, 2.0], "high": [1.5, 2.5], "low": [0.5, 1.5], "close": [1.2, None]},
            index=pd.to_datetime(["2024-01-02", "2024-01-03"]),
        )
        bars = self.proc.frame_to_bars(df, "AAPL")
        assert len(bars) == 1
        assert bars[0].volume == 0.0

    def test_merge_orders_and_dedups(self):
        bars = make_daily_bars("AAPL", date(2024, 3, 15), 10)
        updated = bars[3].model_copy(update={"close": 999.0})
        merged = self.proc.merge_series(list(reversed(bars)), [updated])

        assert len(merged) == 10
        assert [b.date for b in merged] == sorted(b.date for b in bars)
        assert len({b.natural_key for b in merged}) == len(merged)
        assert merged[3].close == 999.0

    def test_intraday_supersedes_daily(self):
        day = date(2024, 3, 15)
        daily = make_daily_bars("BTC-USD", day, 2)
        hourly = make_hourly_bars("BTC-USD", day)
        merged = self.proc.merge_series(daily, hourly)
        assert merged[0].date == day - timedelta(days=1)
        assert all(b.is_intraday for b in merged[1:])
        assert len(merged) == 1 + len(hourly)

    def test_filter_date_range(self):
        bars = make_daily_bars("AAPL", date(2024, 3, 15), 10)
        kept = self.proc.filter_date_range(bars, date(2024, 3, 10), date(2024, 3, 12))
        assert [b.date.day for b in kept] == [10, 11, 12]

    def test_chart_points(self):
        bars = make_daily_bars("AAPL", date(2024, 3, 15), 3, start_price=100)
        points = self.proc.to_chart_points(bars)
        assert points[0]["change"] == 0.0
        assert points[1]["change"] == pytest.approx(1.0)
        assert points[2]["change_percent"] == pytest.approx(100 / 101, rel=1e-3)
        assert points[0]["timestamp"].startswith("2024-03-13T00:00:00")


# ─────────────────────────────────────────────────────────
# 5. 缓存层
# ─────────────────────────────────────────────────────────

class TestCacheLayer:
    def test_key_format(self):
        from market_service.layers.cache import _make_key
        assert _make_key("resolve", "AAPL", "1M", "1d") == "resolve:AAPL:1M:1d"

    def test_long_key_hashed(self):
        from market_service.layers.cache import _make_key
        key = _make_key("ns", "x" * 300)
        assert len(key) < 100
        assert key.startswith("ns:")

    @pytest.mark.asyncio
    async def test_memory_backend_expires_per_entry(self):
        from market_service.layers.cache import MemoryCacheBackend
        clock = [1000.0]
        backend = MemoryCacheBackend(maxsize=8, timer=lambda: clock[0])
        await backend.set("short", "1", 10)
        await backend.set("long", "2", 100)

        clock[0] += 11
        assert await backend.get("short") is None
        assert await backend.get("long") == "2"
        assert (await backend.stats())["keys"] == 1

    @pytest.mark.asyncio
    async def test_json_roundtrip_and_corruption(self):
        from market_service.layers.cache import CacheLayer, MemoryCacheBackend
        backend = MemoryCacheBackend(maxsize=8)
        layer = CacheLayer(backend, timeout=1.0)
        assert await layer.set({"a": 1}, "ns", "k", ttl=60) is True
        assert await layer.get("ns", "k") == {"a": 1}

        await backend.set("ns:bad", "{not json", 60)
        assert await layer.get("ns", "bad") is None

    @pytest.mark.asyncio
    async def test_redis_failure_is_not_fatal(self):
        from market_service.layers.cache import CacheLayer, RedisCacheBackend
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        layer = CacheLayer(RedisCacheBackend(client), timeout=1.0)

        assert await layer.get("resolve", "AAPL") is None
        assert await layer.set([1], "resolve", "AAPL", ttl=60) is False

    @pytest.mark.asyncio
    async def test_redis_backend_translates_errors(self):
        from market_service.layers.cache import RedisCacheBackend
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        with pytest.raises(CacheUnavailable):
            await RedisCacheBackend(client).get("k")

    @pytest.mark.asyncio
    async def test_slow_backend_times_out(self):
        from market_service.layers.cache import CacheBackend, CacheLayer

        class SlowBackend(CacheBackend):
            async def get(self, key):
                await asyncio.sleep(1)

            async def set(self, key, value, ttl):
                await asyncio.sleep(1)

        layer = CacheLayer(SlowBackend(), timeout=0.01)
        assert await layer.get("ns", "k") is None
        assert await layer.set(1, "ns", "k") is False


# ─────────────────────────────────────────────────────────
# 6. API 响应模型
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from market_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"x": 1}, message="done", stale=True)
        assert r.success is True
        assert r.stale is True
        assert r.data == {"x": 1}

    def test_fail(self):
        from market_service.models.response import ApiResponse
        r = ApiResponse.fail(error="invalid_request")
        assert r.success is False
        assert r.error == "invalid_request"
        assert r.stale is False


# ─────────────────────────────────────────────────────────
# 7. HTTP 路由测试（TestClient，不需要真实数据库与网络）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def app():
    """mock 外部连接与解析管线的启动 / 关闭"""
    with patch("market_service.main.init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch("market_service.main.init_redis", new_callable=AsyncMock, return_value=False), \
         patch("market_service.main.init_price_resolver", new_callable=AsyncMock), \
         patch("market_service.main.close_price_resolver", new_callable=AsyncMock), \
         patch("market_service.main.close_connections", new_callable=AsyncMock), \
         patch("market_service.routers.health.check_health", new_callable=AsyncMock, return_value={
             "mongodb": {"status": "disabled"},
             "redis": {"status": "disabled"},
         }):
        from market_service.main import app as fastapi_app
        yield fastapi_app


def _client(app, resolver):
    from market_service.services.aggregation_service import AggregationService, get_aggregation_service
    from market_service.services.price_service import get_price_resolver

    app.dependency_overrides[get_price_resolver] = lambda: resolver
    app.dependency_overrides[get_aggregation_service] = lambda: AggregationService(resolver, concurrency=4)
    return TestClient(app)


@pytest.fixture
def synthetic_client(app):
    from market_service.layers.acquisition import SyntheticProvider
    resolver = build_resolver(SyntheticProvider(), store=SpyStore())
    with _client(app, resolver) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def offline_client(app):
    resolver = build_resolver(FakeProvider(always_fail=ProviderUnavailable("offline")), store=SpyStore())
    with _client(app, resolver) as c:
        yield c
    app.dependency_overrides.clear()


class TestHealthRoutes:
    def test_health_endpoint(self, synthetic_client):
        resp = synthetic_client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["databases"]["redis"]["status"] == "disabled"
        assert body["data"]["cache"]["backend"] == "memory"
        assert body["data"]["store"]["backend"] == "memory"

    def test_probes(self, synthetic_client):
        assert synthetic_client.get("/healthz").json() == {"status": "ok"}
        assert synthetic_client.get("/readyz").json() == {"ready": True}

    def test_root_endpoint(self, synthetic_client):
        resp = synthetic_client.get("/")
        assert resp.status_code == 200
        assert resp.json()["docs"] == "/docs"
        assert "X-Process-Time" in resp.headers

    def test_cache_stats(self, synthetic_client):
        resp = synthetic_client.get("/api/cache/stats")
        assert resp.status_code == 200
        assert resp.json()["data"]["backend"] == "memory"


class TestAssetRoutes:
    def test_asset_detail_then_cache(self, synthetic_client):
        first = synthetic_client.get("/api/assets/aapl", params={"range": "1M"})
        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert body["stale"] is False
        assert body["data"]["symbol"] == "AAPL"
        assert body["data"]["source"] == "provider"
        assert body["data"]["available"] is True
        assert body["data"]["count"] == len(body["data"]["series"]) > 0

        second = synthetic_client.get("/api/assets/AAPL", params={"range": "1M"})
        assert second.json()["data"]["source"] == "cache"

    def test_inverted_dates_are_400(self, synthetic_client):
        resp = synthetic_client.get(
            "/api/assets/AAPL", params={"start_date": "2024-03-10", "end_date": "2024-03-01"}
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_unknown_range_is_400(self, synthetic_client):
        assert synthetic_client.get("/api/assets/AAPL", params={"range": "2W"}).status_code == 400

    def test_quote(self, synthetic_client):
        resp = synthetic_client.get("/api/assets/X:BTCUSD/quote")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["name"] == "Bitcoin"
        assert data["available"] is True

    def test_no_data_state(self, offline_client):
        resp = offline_client.get("/api/assets/ZZZZ", params={"range": "1M"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["stale"] is True
        assert body["data"]["available"] is False
        assert body["data"]["current_price"] is None


class TestWatchlistRoutes:
    def test_chart_defaults_to_one_year(self, synthetic_client):
        resp = synthetic_client.get("/api/watchlist/chart/MSFT")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["range"] == "1Y"
        assert data["points"][0]["change"] == 0.0
        assert {"close", "change", "change_percent"} <= set(data["points"][-1])

    def test_chart_custom_dates(self, synthetic_client):
        end = datetime.now(tz=timezone.utc).date()
        start = end - timedelta(days=3)
        resp = synthetic_client.get(
            "/api/watchlist/chart/X:ETHUSD",
            params={"startDate": start.isoformat(), "endDate": end.isoformat()},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["range"] == "CUSTOM"

    def test_prices_keep_order_and_collapse_duplicates(self, synthetic_client):
        resp = synthetic_client.post(
            "/api/watchlist/prices", json={"symbols": ["msft", "X:BTCUSD", "MSFT", "bad symbol"]}
        )
        assert resp.status_code == 200
        items = resp.json()["data"]
        assert [i["symbol"] for i in items] == ["MSFT", "X:BTCUSD", "BAD SYMBOL"]
        assert items[2]["current_price"] is None

    def test_offline_prices_are_stale(self, offline_client):
        resp = offline_client.post("/api/watchlist/prices", json={"symbols": ["AAPL"]})
        assert resp.json()["stale"] is True


class TestPortfolioAndMarketRoutes:
    def test_valuation(self, synthetic_client):
        resp = synthetic_client.post(
            "/api/portfolio/valuation",
            json={"holdings": [{"symbol": "AAPL", "shares": 10, "avg_price": 50}]},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        row = data["holdings"][0]
        assert row["market_value"] == pytest.approx(10 * row["current_price"], rel=1e-6)
        assert data["total_cost"] == 500

    def test_valuation_rejects_negative_shares(self, synthetic_client):
        resp = synthetic_client.post(
            "/api/portfolio/valuation", json={"holdings": [{"symbol": "AAPL", "shares": -1}]}
        )
        assert resp.status_code == 422

    def test_overview(self, synthetic_client):
        resp = synthetic_client.get("/api/market/overview")
        assert resp.status_code == 200
        tiles = resp.json()["data"]
        categories = {t["category"] for t in tiles}
        assert {"equities", "crypto", "commodities"} <= categories

    def test_movers(self, synthetic_client):
        resp = synthetic_client.get("/api/market/movers", params={"limit": 3})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert set(data) == {"stock_gainers", "stock_losers", "crypto_gainers", "crypto_losers"}
        assert all(len(v) <= 3 for v in data.values())
        gainers = [m["change_percent"] for m in data["stock_gainers"]]
        assert gainers == sorted(gainers, reverse=True)
