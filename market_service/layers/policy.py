"""
区间策略：命名区间天数、新鲜度分级、缓存 TTL、数据充分性阈值，以及请求构造与校验
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from market_service.config import settings
from market_service.exceptions import InvalidRequest
from market_service.models.market import FreshnessClass, InstrumentType, ResolutionRequest, TimeRange
from market_service.symbols import classify_symbol, is_valid_symbol, normalize_symbol


# 不超过该天数的区间请求分时线
INTRADAY_MAX_DAYS = 7

# 年交易日近似值，用于按跨度估算阈值
_TRADING_DAYS_PER_YEAR = 252
_THRESHOLD_COVERAGE = 0.8

_RANGE_DAYS = {
    TimeRange.D1: 1,
    TimeRange.D5: 5,
    TimeRange.W1: 7,
    TimeRange.M1: 30,
    TimeRange.M3: 90,
    TimeRange.M6: 180,
    TimeRange.Y1: 365,
    TimeRange.Y3: 1095,
    TimeRange.Y5: 1825,
    TimeRange.Y10: 3650,
    TimeRange.MAX: 3650,  # 目前最多 10 年
}

_RANGE_FRESHNESS = {
    TimeRange.D1: FreshnessClass.INTRADAY,
    TimeRange.D5: FreshnessClass.SHORT,
    TimeRange.W1: FreshnessClass.SHORT,
    TimeRange.M1: FreshnessClass.SHORT,
    TimeRange.M3: FreshnessClass.MEDIUM,
    TimeRange.M6: FreshnessClass.MEDIUM,
    TimeRange.YTD: FreshnessClass.MEDIUM,
    TimeRange.Y1: FreshnessClass.MEDIUM,
    TimeRange.Y3: FreshnessClass.LONG,
    TimeRange.Y5: FreshnessClass.LONG,
    TimeRange.Y10: FreshnessClass.LONG,
    TimeRange.MAX: FreshnessClass.LONG,
}

# 最少 K 线条数，低于该值视为存储数据不足，需要向提供商补齐
SUFFICIENCY_THRESHOLDS = {
    TimeRange.D1: 1,
    TimeRange.D5: 3,
    TimeRange.W1: 4,
    TimeRange.M1: 20,
    TimeRange.M3: 60,
    TimeRange.M6: 120,
    TimeRange.Y1: 250,
    TimeRange.Y3: 750,
    TimeRange.Y5: 1250,
    TimeRange.Y10: 2500,
    TimeRange.MAX: 2500,
}


# 存储数据需覆盖最近交易日的新鲜度分级
CURRENT_SESSION_FRESHNESS = (FreshnessClass.INTRADAY, FreshnessClass.SHORT)


def last_session_date(symbol: str, day: date) -> date:
    """
    不晚于 day 的最近交易日：加密货币全天候交易，其余品种回退到最近的工作日
    （不含交易所节假日）
    """
    if classify_symbol(symbol) is InstrumentType.CRYPTO:
        return day
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day


def cache_ttl(freshness: FreshnessClass) -> int:
    """按新鲜度分级返回缓存 TTL（秒）"""
    return {
        FreshnessClass.INTRADAY: settings.INTRADAY_CACHE_TTL,
        FreshnessClass.SHORT: settings.SHORT_CACHE_TTL,
        FreshnessClass.MEDIUM: settings.MEDIUM_CACHE_TTL,
        FreshnessClass.LONG: settings.LONG_CACHE_TTL,
    }[freshness]


def freshness_for_span(span_days: int) -> FreshnessClass:
    if span_days <= 1:
        return FreshnessClass.INTRADAY
    if span_days <= 31:
        return FreshnessClass.SHORT
    if span_days <= 366:
        return FreshnessClass.MEDIUM
    return FreshnessClass.LONG


def threshold_for_span(span_days: int) -> int:
    expected = span_days * _TRADING_DAYS_PER_YEAR / 365
    return max(1, int(expected * _THRESHOLD_COVERAGE))


def sufficiency_threshold(time_range: TimeRange, span_days: int) -> int:
    if time_range in SUFFICIENCY_THRESHOLDS:
        return SUFFICIENCY_THRESHOLDS[time_range]
    return threshold_for_span(span_days)


def _parse_date(value: Union[str, date, None], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise InvalidRequest(f"{field} 日期格式错误，应为 YYYY-MM-DD: {value}") from exc


def parse_time_range(value: Union[str, TimeRange, None]) -> TimeRange:
    if isinstance(value, TimeRange):
        return value
    try:
        return TimeRange((value or "1M").strip().upper())
    except ValueError as exc:
        valid = ", ".join(r.value for r in TimeRange if r is not TimeRange.CUSTOM)
        raise InvalidRequest(f"不支持的区间 '{value}'，可选: {valid}") from exc


def build_request(
    symbol: str,
    time_range: Union[str, TimeRange, None] = TimeRange.M1,
    start_date: Union[str, date, None] = None,
    end_date: Union[str, date, None] = None,
    today: Optional[date] = None,
) -> ResolutionRequest:
    """
    构造并校验解析请求

    - 自定义 start/end 优先于命名区间
    - end 晚于今天时截断为今天
    - start > end 直接拒绝
    """
    normalized = normalize_symbol(symbol)
    if not normalized or not is_valid_symbol(normalized):
        raise InvalidRequest(f"非法代码: '{symbol}'")

    today = today or datetime.now(tz=timezone.utc).date()
    start = _parse_date(start_date, "start_date")
    end = _parse_date(end_date, "end_date")

    if start is not None or end is not None:
        if start is None:
            raise InvalidRequest("指定 end_date 时必须同时指定 start_date")
        end = min(end or today, today)
        if start > end:
            raise InvalidRequest(f"开始日期 {start} 晚于结束日期 {end}")
        span = (end - start).days
        return ResolutionRequest(
            symbol=normalized,
            time_range=TimeRange.CUSTOM,
            start=start,
            end=end,
            freshness=freshness_for_span(span),
            want_intraday=span <= INTRADAY_MAX_DAYS,
            threshold=threshold_for_span(span),
        )

    named = parse_time_range(time_range)
    if named is TimeRange.CUSTOM:
        raise InvalidRequest("CUSTOM 区间需要提供 start_date")
    if named is TimeRange.YTD:
        start = date(today.year, 1, 1)
    else:
        start = today - timedelta(days=_RANGE_DAYS[named])
    span = (today - start).days
    return ResolutionRequest(
        symbol=normalized,
        time_range=named,
        start=start,
        end=today,
        freshness=_RANGE_FRESHNESS[named],
        want_intraday=span <= INTRADAY_MAX_DAYS,
        threshold=sufficiency_threshold(named, span),
    )
