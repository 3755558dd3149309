"""
Layer 3 – 数据处理层
将提供商返回的 DataFrame / 逐笔价格标准化为 PriceBar，合并多来源序列，
并生成图表所需的逐点涨跌数据。
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from market_service.models.market import PriceBar

logger = logging.getLogger(__name__)

_OHLC_COLUMNS = ["open", "high", "low", "close"]


class ProcessingLayer:
    """数据处理层：清洗 + 标准化 + 合并"""

    def frame_to_bars(self, df: pd.DataFrame, symbol: str, intraday: bool = False) -> List[PriceBar]:
        """
        将 OHLCV DataFrame（索引为时间）标准化为 K 线列表

        列名大小写不敏感，缺失的 volume 视为 0，收盘价为空的行被丢弃。
        日线取索引的本地日期；分时线统一转换为 UTC 时间戳。
        """
        if df is None or df.empty:
            return []

        df = df.rename(columns=lambda c: str(c).strip().lower().replace(" ", "_"))
        for col in _OHLC_COLUMNS:
            if col not in df.columns:
                return []
        if "volume" not in df.columns:
            df["volume"] = 0.0
        if "adj_close" not in df.columns:
            df["adj_close"] = df["close"]

        numeric = _OHLC_COLUMNS + ["volume", "adj_close"]
        df[numeric] = df[numeric].apply(pd.to_numeric, errors="coerce")
        df = df.dropna(subset=["close"]).copy()
        for col in ("open", "high", "low"):
            df[col] = df[col].fillna(df["close"])
        df["volume"] = df["volume"].fillna(0.0)

        index = pd.DatetimeIndex(pd.to_datetime(df.index))
        bars = []
        for ts, row in zip(index, df.itertuples(index=False)):
            if intraday:
                stamp = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
                moment = stamp.to_pydatetime()
                bar_date, bar_ts = moment.date(), moment
            else:
                bar_date, bar_ts = ts.date(), None
            bars.append(
                PriceBar(
                    symbol=symbol,
                    date=bar_date,
                    timestamp=bar_ts,
                    open=float(row.open),
                    high=float(row.high),
                    low=float(row.low),
                    close=float(row.close),
                    volume=float(row.volume),
                    adjusted_close=float(row.adj_close) if pd.notna(row.adj_close) else None,
                )
            )
        return self.merge_series(bars)

    def ticks_to_bars(
        self,
        prices: Sequence[Sequence[float]],
        volumes: Optional[Sequence[Sequence[float]]],
        symbol: str,
        intraday: bool = False,
    ) -> List[PriceBar]:
        """
        将 [毫秒时间戳, 价格] 逐笔序列重采样为 OHLC K 线（分时按小时，否则按日）
        """
        if not prices:
            return []
        ticks = pd.DataFrame(prices, columns=["ts", "price"])
        ticks.index = pd.to_datetime(ticks["ts"], unit="ms", utc=True)
        rule = "1h" if intraday else "1D"

        ohlc = ticks["price"].resample(rule).ohlc()
        if volumes:
            vol = pd.DataFrame(volumes, columns=["ts", "volume"])
            vol.index = pd.to_datetime(vol["ts"], unit="ms", utc=True)
            # 上游成交量为滚动 24h 值，取每个周期最后一个
            ohlc["volume"] = vol["volume"].resample(rule).last()
        else:
            ohlc["volume"] = 0.0
        ohlc = ohlc.dropna(subset=["close"])
        return self.frame_to_bars(ohlc, symbol, intraday=intraday)

    def merge_series(self, *groups: Iterable[PriceBar]) -> List[PriceBar]:
        """
        合并多组 K 线：同一自然键后出现者覆盖先出现者；
        某日已有分时线时丢弃该日日线；结果按日期、时间升序。
        """
        merged: Dict[Tuple, PriceBar] = {}
        for group in groups:
            for bar in group:
                merged[bar.natural_key] = bar

        intraday_dates = {(b.symbol, b.date) for b in merged.values() if b.is_intraday}
        bars = [
            b for b in merged.values()
            if b.is_intraday or (b.symbol, b.date) not in intraday_dates
        ]
        return sorted(bars, key=lambda b: b.sort_key)

    def filter_date_range(
        self,
        bars: Iterable[PriceBar],
        start: Optional[date],
        end: Optional[date],
    ) -> List[PriceBar]:
        """按日期闭区间过滤"""
        return [
            b for b in bars
            if (start is None or b.date >= start) and (end is None or b.date <= end)
        ]

    def to_chart_points(self, bars: List[PriceBar]) -> List[Dict[str, Any]]:
        """图表数据点：在收盘价之上补充逐点涨跌额与涨跌幅"""
        if not bars:
            return []
        df = pd.DataFrame([b.model_dump() for b in bars])
        df["change"] = df["close"].diff().fillna(0.0).round(4)
        df["change_percent"] = (df["close"].pct_change() * 100).fillna(0.0).round(4)

        points = []
        for bar, change, pct in zip(bars, df["change"], df["change_percent"]):
            moment = bar.timestamp or datetime.combine(bar.date, datetime.min.time(), tzinfo=timezone.utc)
            points.append({
                "date": bar.date.isoformat(),
                "timestamp": moment.isoformat(),
                "open": bar.open,
                "high": bar.high,
                "low": bar.low,
                "close": bar.close,
                "volume": bar.volume,
                "change": float(change),
                "change_percent": float(pct),
            })
        return points


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
