"""
行情服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class MarketServiceSettings(BaseSettings):
    """行情服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 持久化存储 ────────────────────────────────────────
    STORE_BACKEND: str = Field(default="sqlite")   # sqlite / mongodb / memory
    SQLITE_PATH: str = Field(default="./data/market.db")

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="market_dashboard")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGODB_ENABLED(self) -> bool:
        return self.STORE_BACKEND.lower() == "mongodb"

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 数据提供商配置 ─────────────────────────────────────
    PROVIDER_MODE: str = Field(default="live")     # live / synthetic
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    COINGECKO_API_KEY: str = Field(default="")
    PROVIDER_TIMEOUT: float = Field(default=10.0)  # 单次请求超时（秒）
    PROVIDER_MAX_ATTEMPTS: int = Field(default=3)
    PROVIDER_BACKOFF_BASE: float = Field(default=0.5)
    PROVIDER_BACKOFF_MAX: float = Field(default=8.0)

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_TIMEOUT: float = Field(default=2.0)
    STORE_TIMEOUT: float = Field(default=5.0)
    MEMORY_CACHE_MAXSIZE: int = Field(default=4096)
    INTRADAY_CACHE_TTL: int = Field(default=120)    # 1D
    SHORT_CACHE_TTL: int = Field(default=300)       # 5D / 1W / 1M
    MEDIUM_CACHE_TTL: int = Field(default=1800)     # 3M / 6M / YTD / 1Y
    LONG_CACHE_TTL: int = Field(default=3600)       # 3Y 及以上
    QUOTE_CACHE_TTL: int = Field(default=120)       # 仅现价

    # ── 聚合视图配置 ───────────────────────────────────────
    AGGREGATION_CONCURRENCY: int = Field(default=8)
    MARKET_OVERVIEW_SYMBOLS: List[str] = Field(
        default_factory=lambda: [
            "^GSPC", "^DJI", "^IXIC", "^RUT", "^FTSE", "^N225", "^GSPTSE",
            "X:BTCUSD", "X:ETHUSD",
            "XAUUSD", "XAGUSD",
        ]
    )
    MARKET_MOVERS_SYMBOLS: List[str] = Field(
        default_factory=lambda: [
            "AAPL", "MSFT", "NVDA", "AMZN", "GOOGL", "META", "TSLA", "AMD",
            "NFLX", "JPM", "V", "XOM", "WMT", "DIS", "INTC", "BA",
            "X:BTCUSD", "X:ETHUSD", "X:SOLUSD", "X:XRPUSD", "X:DOGEUSD", "X:ADAUSD",
        ]
    )
    MOVERS_LIMIT: int = Field(default=25)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> MarketServiceSettings:
    """获取全局配置（单例）"""
    return MarketServiceSettings()


settings = get_settings()
