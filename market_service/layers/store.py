"""
持久化存储层
K 线表以自然键唯一：日线 (symbol, date)，分时线 (symbol, timestamp)
upsert 由存储自身在单条语句内完成「插入或更新」，调用方不做先读后写
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import aiosqlite
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import PyMongoError

from market_service.exceptions import StoreUnavailable
from market_service.models.market import AssetMetadata, InstrumentType, PriceBar

logger = logging.getLogger(__name__)


class PriceStore(ABC):
    """K 线与资产元数据的持久化接口"""

    name: str = "store"
    supports_intraday: bool = True

    async def init(self) -> None:
        """建表 / 建索引"""

    async def close(self) -> None:
        """释放连接"""

    @abstractmethod
    async def query_range(
        self, symbol: str, start: date, end: date, want_intraday: bool = False
    ) -> List[PriceBar]:
        """按日期闭区间查询，结果按日期、时间升序"""

    @abstractmethod
    async def upsert_bars(self, symbol: str, bars: Iterable[PriceBar]) -> int:
        """按自然键插入或更新，返回写入条数"""

    @abstractmethod
    async def query_metadata(self, symbol: str) -> Optional[AssetMetadata]:
        ...

    @abstractmethod
    async def upsert_metadata(self, metadata: AssetMetadata) -> None:
        ...

    async def stats(self) -> dict:
        return {"backend": self.name}


def _utcnow_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# ─────────────────────────────────────────────────────────
# SQLite（关系型，默认）
# ─────────────────────────────────────────────────────────

# ts = 0 表示日线，分时线存 UTC 秒级时间戳
CREATE_SQL = (
    """
    CREATE TABLE IF NOT EXISTS asset_data (
      symbol TEXT NOT NULL,
      date TEXT NOT NULL,
      ts INTEGER NOT NULL DEFAULT 0,
      open REAL NOT NULL,
      high REAL NOT NULL,
      low REAL NOT NULL,
      close REAL NOT NULL,
      volume REAL NOT NULL DEFAULT 0,
      adjusted_close REAL,
      updated_at TEXT NOT NULL,
      PRIMARY KEY (symbol, date, ts)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS asset_info (
      symbol TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      type TEXT NOT NULL,
      exchange TEXT NOT NULL DEFAULT '',
      currency TEXT NOT NULL DEFAULT 'USD',
      category TEXT NOT NULL DEFAULT 'equities',
      updated_at TEXT NOT NULL
    );
    """,
)

UPSERT_BAR_SQL = """
INSERT INTO asset_data (symbol, date, ts, open, high, low, close, volume, adjusted_close, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(symbol, date, ts) DO UPDATE SET
  open=excluded.open,
  high=excluded.high,
  low=excluded.low,
  close=excluded.close,
  volume=excluded.volume,
  adjusted_close=excluded.adjusted_close,
  updated_at=excluded.updated_at;
"""

UPSERT_INFO_SQL = """
INSERT INTO asset_info (symbol, name, type, exchange, currency, category, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(symbol) DO UPDATE SET
  name=excluded.name,
  type=excluded.type,
  exchange=excluded.exchange,
  currency=excluded.currency,
  category=excluded.category,
  updated_at=excluded.updated_at;
"""


class SQLitePriceStore(PriceStore):
    name = "sqlite"

    def __init__(self, path: str, busy_timeout: float = 5.0):
        self.path = path
        self._busy_timeout = busy_timeout
        self._ready = False
        self._init_lock = asyncio.Lock()

    def _connect(self):
        return aiosqlite.connect(self.path, timeout=self._busy_timeout)

    async def init(self) -> None:
        async with self._init_lock:
            if self._ready:
                return
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                async with self._connect() as db:
                    for statement in CREATE_SQL:
                        await db.execute(statement)
                    await db.commit()
            except (aiosqlite.Error, OSError) as exc:
                raise StoreUnavailable(f"SQLite 初始化失败: {exc}") from exc
            self._ready = True
            logger.info(f"✅ SQLite 存储就绪: {self.path}")

    async def query_range(
        self, symbol: str, start: date, end: date, want_intraday: bool = False
    ) -> List[PriceBar]:
        await self.init()
        sql = (
            "SELECT symbol, date, ts, open, high, low, close, volume, adjusted_close "
            "FROM asset_data WHERE symbol=? AND date>=? AND date<=?"
        )
        if not want_intraday:
            sql += " AND ts=0"
        sql += " ORDER BY date ASC, ts ASC"
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(sql, (symbol, start.isoformat(), end.isoformat()))
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"SQLite 查询失败: {exc}") from exc
        return [
            PriceBar(
                symbol=r["symbol"],
                date=date.fromisoformat(r["date"]),
                timestamp=datetime.fromtimestamp(r["ts"], tz=timezone.utc) if r["ts"] else None,
                open=r["open"],
                high=r["high"],
                low=r["low"],
                close=r["close"],
                volume=r["volume"],
                adjusted_close=r["adjusted_close"],
            )
            for r in rows
        ]

    async def upsert_bars(self, symbol: str, bars: Iterable[PriceBar]) -> int:
        now = _utcnow_iso()
        params = [
            (
                symbol,
                b.date.isoformat(),
                int(b.timestamp.timestamp()) if b.timestamp else 0,
                b.open,
                b.high,
                b.low,
                b.close,
                b.volume,
                b.adjusted_close if b.adjusted_close is not None else b.close,
                now,
            )
            for b in bars
        ]
        if not params:
            return 0
        await self.init()
        try:
            async with self._connect() as db:
                await db.executemany(UPSERT_BAR_SQL, params)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"SQLite 写入失败: {exc}") from exc
        return len(params)

    async def query_metadata(self, symbol: str) -> Optional[AssetMetadata]:
        await self.init()
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(
                    "SELECT symbol, name, type, exchange, currency, category "
                    "FROM asset_info WHERE symbol=?",
                    (symbol,),
                )
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"SQLite 查询失败: {exc}") from exc
        if row is None:
            return None
        return AssetMetadata(
            symbol=row["symbol"],
            display_name=row["name"],
            instrument_type=InstrumentType(row["type"]),
            exchange=row["exchange"],
            currency=row["currency"],
            category=row["category"],
        )

    async def upsert_metadata(self, metadata: AssetMetadata) -> None:
        await self.init()
        try:
            async with self._connect() as db:
                await db.execute(
                    UPSERT_INFO_SQL,
                    (
                        metadata.symbol,
                        metadata.display_name,
                        metadata.instrument_type.value,
                        metadata.exchange,
                        metadata.currency,
                        metadata.category,
                        _utcnow_iso(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"SQLite 写入失败: {exc}") from exc

    async def count_bars(self, symbol: str) -> int:
        await self.init()
        try:
            async with self._connect() as db:
                cur = await db.execute("SELECT COUNT(*) FROM asset_data WHERE symbol=?", (symbol,))
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailable(f"SQLite 查询失败: {exc}") from exc
        return int(row[0])

    async def stats(self) -> dict:
        try:
            async with self._connect() as db:
                cur = await db.execute("SELECT COUNT(*), COUNT(DISTINCT symbol) FROM asset_data")
                bars, symbols = await cur.fetchone()
        except aiosqlite.Error as exc:
            return {"backend": self.name, "status": "error", "error": str(exc)}
        return {"backend": self.name, "bars": bars, "symbols": symbols, "status": "healthy"}


# ─────────────────────────────────────────────────────────
# MongoDB
# ─────────────────────────────────────────────────────────

_BARS = "asset_data"
_INFO = "asset_info"


def _bar_filter(symbol: str, bar: PriceBar) -> dict:
    # 日线 timestamp 为 null，与唯一索引中的 null 值对应
    return {"symbol": symbol, "date": bar.date.isoformat(), "timestamp": bar.timestamp}


class MongoPriceStore(PriceStore):
    """MongoDB 存储，数据库句柄通过 getter 延迟获取（连接失败时为 None）"""

    name = "mongodb"

    def __init__(self, db_getter: Callable[[], Optional[AsyncIOMotorDatabase]]):
        self._db_getter = db_getter

    def _db(self) -> AsyncIOMotorDatabase:
        db = self._db_getter()
        if db is None:
            raise StoreUnavailable("MongoDB 未连接")
        return db

    async def init(self) -> None:
        db = self._db()
        try:
            await db[_BARS].create_index(
                [("symbol", ASCENDING), ("date", ASCENDING), ("timestamp", ASCENDING)],
                unique=True,
                name="uniq_symbol_date_ts",
            )
            await db[_INFO].create_index([("symbol", ASCENDING)], unique=True, name="uniq_symbol")
        except PyMongoError as exc:
            raise StoreUnavailable(f"MongoDB 建索引失败: {exc}") from exc

    async def query_range(
        self, symbol: str, start: date, end: date, want_intraday: bool = False
    ) -> List[PriceBar]:
        query: dict = {"symbol": symbol, "date": {"$gte": start.isoformat(), "$lte": end.isoformat()}}
        if not want_intraday:
            query["timestamp"] = None
        try:
            cursor = self._db()[_BARS].find(query, {"_id": 0}).sort(
                [("date", ASCENDING), ("timestamp", ASCENDING)]
            )
            docs = await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise StoreUnavailable(f"MongoDB 查询失败: {exc}") from exc
        return [PriceBar(**{k: v for k, v in doc.items() if k != "updated_at"}) for doc in docs]

    async def upsert_bars(self, symbol: str, bars: Iterable[PriceBar]) -> int:
        now = datetime.now(tz=timezone.utc)
        ops = []
        for bar in bars:
            doc = bar.model_dump()
            doc["date"] = bar.date.isoformat()
            doc["symbol"] = symbol
            if doc["adjusted_close"] is None:
                doc["adjusted_close"] = bar.close
            doc["updated_at"] = now
            ops.append(UpdateOne(_bar_filter(symbol, bar), {"$set": doc}, upsert=True))
        if not ops:
            return 0
        try:
            await self._db()[_BARS].bulk_write(ops, ordered=False)
        except PyMongoError as exc:
            raise StoreUnavailable(f"MongoDB 写入失败: {exc}") from exc
        return len(ops)

    async def query_metadata(self, symbol: str) -> Optional[AssetMetadata]:
        try:
            doc = await self._db()[_INFO].find_one({"symbol": symbol}, {"_id": 0})
        except PyMongoError as exc:
            raise StoreUnavailable(f"MongoDB 查询失败: {exc}") from exc
        if not doc:
            return None
        doc.pop("updated_at", None)
        return AssetMetadata(**doc)

    async def upsert_metadata(self, metadata: AssetMetadata) -> None:
        doc = metadata.model_dump(mode="json")
        doc["updated_at"] = datetime.now(tz=timezone.utc)
        try:
            await self._db()[_INFO].update_one(
                {"symbol": metadata.symbol}, {"$set": doc}, upsert=True
            )
        except PyMongoError as exc:
            raise StoreUnavailable(f"MongoDB 写入失败: {exc}") from exc

    async def stats(self) -> dict:
        try:
            count = await self._db()[_BARS].count_documents({})
        except (PyMongoError, StoreUnavailable) as exc:
            return {"backend": self.name, "status": "error", "error": str(exc)}
        return {"backend": self.name, "bars": count, "status": "healthy"}


# ─────────────────────────────────────────────────────────
# 进程内存储（合成数据模式 / 测试）
# ─────────────────────────────────────────────────────────

class MemoryPriceStore(PriceStore):
    name = "memory"

    def __init__(self):
        self._bars: Dict[Tuple, PriceBar] = {}
        self._info: Dict[str, AssetMetadata] = {}
        self._lock = asyncio.Lock()

    async def query_range(
        self, symbol: str, start: date, end: date, want_intraday: bool = False
    ) -> List[PriceBar]:
        async with self._lock:
            rows = [
                b for b in self._bars.values()
                if b.symbol == symbol
                and start <= b.date <= end
                and (want_intraday or not b.is_intraday)
            ]
        return sorted(rows, key=lambda b: b.sort_key)

    async def upsert_bars(self, symbol: str, bars: Iterable[PriceBar]) -> int:
        count = 0
        async with self._lock:
            for bar in bars:
                stored = bar.model_copy(update={"symbol": symbol})
                if stored.adjusted_close is None:
                    stored = stored.model_copy(update={"adjusted_close": stored.close})
                self._bars[stored.natural_key] = stored
                count += 1
        return count

    async def query_metadata(self, symbol: str) -> Optional[AssetMetadata]:
        async with self._lock:
            return self._info.get(symbol)

    async def upsert_metadata(self, metadata: AssetMetadata) -> None:
        async with self._lock:
            self._info[metadata.symbol] = metadata

    async def count_bars(self, symbol: str) -> int:
        async with self._lock:
            return sum(1 for b in self._bars.values() if b.symbol == symbol)

    async def stats(self) -> dict:
        async with self._lock:
            symbols = {b.symbol for b in self._bars.values()}
            return {"backend": self.name, "bars": len(self._bars), "symbols": len(symbols), "status": "healthy"}
