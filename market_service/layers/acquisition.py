"""
Layer 1 – 数据获取层
按品种把请求路由到上游行情提供商（yfinance / CoinGecko / 合成数据），
统一把上游错误翻译为 RateLimited / ProviderUnavailable。
提供商客户端只负责取数，不读写缓存与存储。
"""

import asyncio
import functools
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import numpy as np
import pandas as pd

from market_service.config import settings
from market_service.exceptions import ProviderUnavailable, RateLimited
from market_service.layers.processing import get_processing_layer
from market_service.models.market import InstrumentType, PriceBar, Quote
from market_service.symbols import (
    COMMODITY_TICKERS,
    CRYPTO_PREFIX,
    classify_symbol,
    crypto_base,
    display_name,
)

logger = logging.getLogger(__name__)


# ── 退避重试 ──────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    """限流退避策略：第 n 次重试前等待 base_delay * 2^(n-1) 秒，上限 max_delay"""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    attempt_timeout: Optional[float] = None

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.max_delay)
        return delay

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            base_delay=settings.PROVIDER_BACKOFF_BASE,
            max_delay=settings.PROVIDER_BACKOFF_MAX,
            attempt_timeout=settings.PROVIDER_TIMEOUT,
        )


def with_backoff(
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """
    异步调用的限流重试装饰器

    - RateLimited：按策略等待后重试，次数耗尽转为 ProviderUnavailable
    - 单次调用超时：转为 ProviderUnavailable，不重试
    - 其他 ProviderUnavailable 原样抛出
    """

    def decorator(func):
        name = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    call = func(*args, **kwargs)
                    if policy.attempt_timeout is not None:
                        return await asyncio.wait_for(call, policy.attempt_timeout)
                    return await call
                except asyncio.TimeoutError as exc:
                    raise ProviderUnavailable(
                        f"{name} 超时（{policy.attempt_timeout}s）"
                    ) from exc
                except RateLimited as exc:
                    if attempt >= policy.max_attempts:
                        raise ProviderUnavailable(
                            f"{name} 限流，重试 {attempt} 次后放弃"
                        ) from exc
                    delay = policy.delay_for(attempt, exc.retry_after)
                    logger.warning(
                        f"⏳ {name} 被限流，{delay:.2f}s 后第 {attempt + 1} 次尝试"
                    )
                    await sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


# ── 提供商接口 ────────────────────────────────────────────

class ProviderClient(ABC):
    """上游行情提供商"""

    name: str = "provider"

    @abstractmethod
    async def fetch_snapshot(self, symbol: str) -> Quote:
        """现价快照"""

    @abstractmethod
    async def fetch_range(
        self, symbol: str, start: date, end: date, intraday: bool = False
    ) -> List[PriceBar]:
        """日期闭区间内的 K 线（intraday=True 时为小时线）"""

    async def close(self) -> None:
        """释放网络会话"""


# ─────────────────────────────────────────────────────────
# yfinance（股票 / ETF / 指数 / 商品期货）
# ─────────────────────────────────────────────────────────

def yahoo_ticker(symbol: str) -> str:
    """内部代码 → Yahoo 代码：商品映射为期货代码，X:BTCUSD 映射为 BTC-USD"""
    upper = symbol.upper()
    if upper in COMMODITY_TICKERS:
        return COMMODITY_TICKERS[upper]
    if upper.startswith(CRYPTO_PREFIX):
        return f"{crypto_base(upper)}-USD"
    return upper


def _translate_yf_error(symbol: str, exc: Exception) -> Exception:
    from yfinance.exceptions import YFRateLimitError

    if isinstance(exc, YFRateLimitError):
        return RateLimited(f"yfinance 限流: {symbol}")
    return ProviderUnavailable(f"yfinance 获取失败: {symbol}: {exc}")


class YFinanceProvider(ProviderClient):
    name = "yfinance"

    def __init__(self, ticker_map: Callable[[str], str] = yahoo_ticker):
        self._ticker_map = ticker_map

    def _history(self, ticker: str, start: date, end: date, interval: str) -> pd.DataFrame:
        import yfinance as yf

        # yfinance 的 end 为开区间
        return yf.Ticker(ticker).history(
            start=start.isoformat(),
            end=(end + timedelta(days=1)).isoformat(),
            interval=interval,
            auto_adjust=False,
        )

    def _fast_info(self, ticker: str) -> Dict[str, Any]:
        import yfinance as yf

        info = yf.Ticker(ticker).fast_info
        return {
            "price": info.last_price,
            "previous_close": info.previous_close,
            "currency": info.currency,
            "exchange": info.exchange,
        }

    async def fetch_range(
        self, symbol: str, start: date, end: date, intraday: bool = False
    ) -> List[PriceBar]:
        ticker = self._ticker_map(symbol)
        interval = "1h" if intraday else "1d"
        try:
            df = await asyncio.to_thread(self._history, ticker, start, end, interval)
        except Exception as exc:
            raise _translate_yf_error(symbol, exc) from exc
        bars = get_processing_layer().frame_to_bars(df, symbol, intraday=intraday)
        logger.info(f"yfinance {symbol}({ticker}) {start}~{end} {interval}: {len(bars)} 条")
        return bars

    async def fetch_snapshot(self, symbol: str) -> Quote:
        ticker = self._ticker_map(symbol)
        try:
            info = await asyncio.to_thread(self._fast_info, ticker)
        except Exception as exc:
            raise _translate_yf_error(symbol, exc) from exc
        price = info.get("price")
        if price is None or pd.isna(price):
            raise ProviderUnavailable(f"yfinance 无现价: {symbol}")
        previous = info.get("previous_close")
        return Quote(
            symbol=symbol,
            price=float(price),
            previous_close=float(previous) if previous is not None and not pd.isna(previous) else None,
            exchange=info.get("exchange"),
            currency=info.get("currency"),
        )


# ─────────────────────────────────────────────────────────
# CoinGecko（加密货币）
# ─────────────────────────────────────────────────────────

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "ADA": "cardano",
    "SOL": "solana",
    "XRP": "ripple",
    "DOT": "polkadot",
    "DOGE": "dogecoin",
    "AVAX": "avalanche-2",
    "SHIB": "shiba-inu",
    "MATIC": "matic-network",
    "UNI": "uniswap",
    "LTC": "litecoin",
    "ATOM": "cosmos",
    "LINK": "chainlink",
    "AAVE": "aave",
}


def _retry_after(headers) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class CoinGeckoProvider(ProviderClient):
    name = "coingecko"

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = None,
    ):
        self.base_url = (base_url or settings.COINGECKO_BASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.COINGECKO_API_KEY
        self._session = session
        self._timeout = timeout or settings.PROVIDER_TIMEOUT

    def _coin_id(self, symbol: str) -> str:
        base = crypto_base(symbol)
        coin_id = COINGECKO_IDS.get(base)
        if not coin_id:
            raise ProviderUnavailable(f"CoinGecko 不支持的币种: {symbol}")
        return coin_id

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"x-cg-demo-api-key": self._api_key} if self._api_key else None
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers=headers,
            )
        return self._session

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().get(url, params=params) as resp:
                if resp.status == 429:
                    raise RateLimited(
                        f"CoinGecko 限流: {path}", retry_after=_retry_after(resp.headers)
                    )
                if resp.status != 200:
                    raise ProviderUnavailable(f"CoinGecko HTTP {resp.status}: {path}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ProviderUnavailable(f"CoinGecko 请求失败: {path}: {exc!r}") from exc

    async def fetch_snapshot(self, symbol: str) -> Quote:
        coin_id = self._coin_id(symbol)
        data = await self._get_json(
            "/simple/price",
            {"ids": coin_id, "vs_currencies": "usd", "include_24hr_change": "true"},
        )
        coin = (data or {}).get(coin_id) or {}
        price = coin.get("usd")
        if price is None:
            raise ProviderUnavailable(f"CoinGecko 无现价: {symbol}")
        price = float(price)
        previous = None
        change_24h = coin.get("usd_24h_change")
        if change_24h is not None and float(change_24h) > -100:
            previous = price / (1 + float(change_24h) / 100)
        return Quote(
            symbol=symbol,
            price=price,
            previous_close=previous,
            name=display_name(symbol),
            exchange="CRYPTO",
            currency="USD",
        )

    async def fetch_range(
        self, symbol: str, start: date, end: date, intraday: bool = False
    ) -> List[PriceBar]:
        coin_id = self._coin_id(symbol)
        since = datetime.combine(start, time.min, tzinfo=timezone.utc)
        until = datetime.combine(end, time.max, tzinfo=timezone.utc)
        data = await self._get_json(
            f"/coins/{coin_id}/market_chart/range",
            {"vs_currency": "usd", "from": int(since.timestamp()), "to": int(until.timestamp())},
        )
        if not isinstance(data, dict) or "prices" not in data:
            raise ProviderUnavailable(f"CoinGecko 响应格式异常: {symbol}")
        bars = get_processing_layer().ticks_to_bars(
            data.get("prices") or [], data.get("total_volumes"), symbol, intraday=intraday
        )
        logger.info(f"CoinGecko {symbol}({coin_id}) {start}~{end}: {len(bars)} 条")
        return bars

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# ─────────────────────────────────────────────────────────
# 合成数据（离线 / 演示模式）
# ─────────────────────────────────────────────────────────

_SYNTHETIC_ANCHOR = date(2000, 1, 1)
_EQUITY_SESSION_HOURS = range(14, 21)  # UTC，约为美股交易时段


def _seed(*parts: str) -> int:
    return int(hashlib.md5(":".join(parts).encode()).hexdigest()[:8], 16)


class SyntheticProvider(ProviderClient):
    """
    确定性的几何随机游走行情：同一代码在任意区间请求下得到一致的历史价格。
    非加密货币只生成工作日数据。
    """

    name = "synthetic"

    def __init__(self, today: Callable[[], date] = None):
        self._today = today or (lambda: datetime.now(tz=timezone.utc).date())

    def _daily_closes(self, symbol: str, end: date) -> pd.Series:
        rng = np.random.default_rng(_seed(symbol))
        crypto = classify_symbol(symbol) is InstrumentType.CRYPTO
        base = rng.uniform(5_000, 60_000) if crypto else rng.uniform(20, 500)
        vol = 0.035 if crypto else 0.015
        days = pd.date_range(_SYNTHETIC_ANCHOR, end, freq="D")
        returns = rng.normal(0.0002, vol, len(days))
        closes = pd.Series(base * np.exp(np.cumsum(returns)), index=days)
        if not crypto:
            closes = closes[closes.index.dayofweek < 5]
        return closes

    def _daily_bars(self, symbol: str, start: date, end: date) -> List[PriceBar]:
        closes = self._daily_closes(symbol, end)
        opens = closes.shift(1).fillna(closes.iloc[0]) if not closes.empty else closes
        bars = []
        for ts, close in closes[closes.index >= pd.Timestamp(start)].items():
            rng = np.random.default_rng(_seed(symbol, ts.date().isoformat()))
            open_ = float(opens[ts])
            spread = abs(rng.normal(0, 0.006))
            bars.append(
                PriceBar(
                    symbol=symbol,
                    date=ts.date(),
                    open=round(open_, 4),
                    high=round(max(open_, close) * (1 + spread), 4),
                    low=round(min(open_, close) * (1 - spread), 4),
                    close=round(float(close), 4),
                    volume=float(rng.integers(100_000, 5_000_000)),
                )
            )
        return bars

    def _hourly_bars(self, symbol: str, daily: List[PriceBar]) -> List[PriceBar]:
        crypto = classify_symbol(symbol) is InstrumentType.CRYPTO
        hours = list(range(24)) if crypto else list(_EQUITY_SESSION_HOURS)
        bars = []
        for day in daily:
            rng = np.random.default_rng(_seed(symbol, day.date.isoformat(), "1h"))
            path = np.linspace(day.open, day.close, len(hours) + 1)
            noise = rng.normal(0, 0.002, len(hours) + 1)
            path = path * (1 + noise)
            path[0], path[-1] = day.open, day.close
            for i, hour in enumerate(hours):
                o, c = float(path[i]), float(path[i + 1])
                bars.append(
                    PriceBar(
                        symbol=symbol,
                        date=day.date,
                        timestamp=datetime.combine(day.date, time(hour), tzinfo=timezone.utc),
                        open=round(o, 4),
                        high=round(max(o, c), 4),
                        low=round(min(o, c), 4),
                        close=round(c, 4),
                        volume=round(day.volume / len(hours), 2),
                    )
                )
        return bars

    async def fetch_range(
        self, symbol: str, start: date, end: date, intraday: bool = False
    ) -> List[PriceBar]:
        end = min(end, self._today())
        if start > end:
            return []
        daily = self._daily_bars(symbol, start, end)
        return self._hourly_bars(symbol, daily) if intraday else daily

    async def fetch_snapshot(self, symbol: str) -> Quote:
        today = self._today()
        bars = self._daily_bars(symbol, today - timedelta(days=10), today)
        if not bars:
            raise ProviderUnavailable(f"合成数据为空: {symbol}")
        kind = classify_symbol(symbol)
        return Quote(
            symbol=symbol,
            price=bars[-1].close,
            previous_close=bars[-2].close if len(bars) > 1 else None,
            name=display_name(symbol),
            exchange="CRYPTO" if kind is InstrumentType.CRYPTO else "SYNTHETIC",
            currency="USD",
        )


# ── 路由 ─────────────────────────────────────────────────

class ProviderRouter:
    """按品种类型选择提供商，未登记的类型使用默认提供商"""

    def __init__(self, routes: Dict[InstrumentType, ProviderClient], default: ProviderClient):
        self._routes = dict(routes)
        self._default = default

    def route(self, symbol: str) -> ProviderClient:
        return self._routes.get(classify_symbol(symbol), self._default)

    def providers(self) -> List[ProviderClient]:
        seen: Dict[int, ProviderClient] = {id(self._default): self._default}
        for client in self._routes.values():
            seen.setdefault(id(client), client)
        return list(seen.values())

    async def close(self) -> None:
        for client in self.providers():
            await client.close()
