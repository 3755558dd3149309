"""行情领域模型：K 线、资产元数据、报价快照、解析请求与结果"""

import datetime as dt
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InstrumentType(str, Enum):
    EQUITY = "equity"
    ETF = "etf"
    CRYPTO = "crypto"
    COMMODITY = "commodity"
    INDEX = "index"


class TimeRange(str, Enum):
    D1 = "1D"
    D5 = "5D"
    W1 = "1W"
    M1 = "1M"
    M3 = "3M"
    M6 = "6M"
    YTD = "YTD"
    Y1 = "1Y"
    Y3 = "3Y"
    Y5 = "5Y"
    Y10 = "10Y"
    MAX = "MAX"
    CUSTOM = "CUSTOM"


class FreshnessClass(str, Enum):
    INTRADAY = "intraday"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class ResolutionSource(str, Enum):
    CACHE = "cache"
    STORE = "store"
    PROVIDER = "provider"
    DEGRADED = "degraded"


class PriceBar(BaseModel):
    """
    单根 OHLCV K 线

    日线 timestamp 为空，自然键为 (symbol, date)；
    分时线 timestamp 非空（UTC），自然键为 (symbol, timestamp)。
    """

    symbol: str
    date: dt.date
    timestamp: Optional[dt.datetime] = None
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    adjusted_close: Optional[float] = None

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)

    @property
    def is_intraday(self) -> bool:
        return self.timestamp is not None

    @property
    def natural_key(self) -> Tuple:
        if self.timestamp is not None:
            return (self.symbol, self.timestamp)
        return (self.symbol, self.date)

    @property
    def sort_key(self) -> Tuple:
        # 同一日期内日线排在分时线之前
        if self.timestamp is None:
            return (self.date, 0, dt.datetime.min.replace(tzinfo=dt.timezone.utc))
        return (self.date, 1, self.timestamp)


class AssetMetadata(BaseModel):
    symbol: str
    display_name: str
    instrument_type: InstrumentType = InstrumentType.EQUITY
    exchange: str = ""
    currency: str = "USD"
    category: str = "equities"


class Quote(BaseModel):
    """提供商现价快照，可附带更丰富的元数据字段"""

    symbol: str
    price: float
    previous_close: Optional[float] = None
    as_of: dt.datetime = Field(default_factory=lambda: dt.datetime.now(tz=dt.timezone.utc))
    name: Optional[str] = None
    exchange: Optional[str] = None
    currency: Optional[str] = None


class ResolutionRequest(BaseModel):
    """单次解析请求（不落库，由 build_request 构造并校验）"""

    model_config = ConfigDict(frozen=True)

    symbol: str
    time_range: TimeRange
    start: dt.date
    end: dt.date
    freshness: FreshnessClass
    want_intraday: bool = False
    threshold: int = 1

    @property
    def span_days(self) -> int:
        return (self.end - self.start).days

    def cache_parts(self) -> List[str]:
        parts = [self.symbol, self.time_range.value]
        if self.time_range is TimeRange.CUSTOM:
            parts += [self.start.isoformat(), self.end.isoformat()]
        parts.append("1h" if self.want_intraday else "1d")
        return parts


class Resolution(BaseModel):
    symbol: str
    time_range: TimeRange
    start: dt.date
    end: dt.date
    current_price: Optional[float] = None
    previous_close: Optional[float] = None
    change: float = 0.0
    change_percent: float = 0.0
    series: List[PriceBar] = Field(default_factory=list)
    source: ResolutionSource
    metadata: Optional[AssetMetadata] = None

    @property
    def is_degraded(self) -> bool:
        return self.source is ResolutionSource.DEGRADED

    @property
    def available(self) -> bool:
        return self.current_price is not None or bool(self.series)


class PriceSummary(BaseModel):
    """列表视图使用的现价摘要"""

    symbol: str
    name: str
    current_price: Optional[float] = None
    change: float = 0.0
    change_percent: float = 0.0
    source: ResolutionSource = ResolutionSource.DEGRADED

    @classmethod
    def unavailable(cls, symbol: str, name: Optional[str] = None) -> "PriceSummary":
        return cls(symbol=symbol, name=name or symbol)


class Holding(BaseModel):
    """持仓：数量与平均成本"""

    symbol: str
    shares: float = Field(ge=0)
    avg_price: float = Field(default=0.0, ge=0)
