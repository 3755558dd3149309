"""
Market Dashboard 行情数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn market_service.main:app --host 0.0.0.0 --port 8001
    python -m market_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_service import __version__
from market_service.config import settings
from market_service.db import close_connections, init_mongodb, init_redis
from market_service.exceptions import InvalidRequest
from market_service.routers import assets, cache, health, market, portfolio, watchlist
from market_service.services.aggregation_service import reset_aggregation_service
from market_service.services.price_service import close_price_resolver, init_price_resolver

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Market Dashboard MarketService v{__version__} 启动中")
    logger.info(f"   存储      : {settings.STORE_BACKEND}")
    logger.info(f"   提供商    : {settings.PROVIDER_MODE}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info("=" * 60)

    # 外部连接失败不阻断启动，降级运行
    redis_ok = await init_redis()
    await init_mongodb()
    await init_price_resolver()

    if not redis_ok:
        logger.warning("⚠️ Redis 不可用，缓存降级为进程内 TTL 缓存")

    yield

    logger.info("🔄 行情服务正在关闭...")
    reset_aggregation_service()
    await close_price_resolver()
    await close_connections()
    logger.info("✅ 行情服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Market Dashboard 行情数据服务",
    description=(
        "仪表盘的价格解析后端：\n"
        "- 📊 资产详情（区间序列 + 现价 + 元数据）\n"
        "- ⭐ 自选股图表与批量报价\n"
        "- 💼 持仓估值\n"
        "- 🌐 市场概览与涨跌榜\n\n"
        "**解析顺序**\n"
        "```\n"
        "Cache     ← Redis / 进程内 TTL 缓存\n"
        "Store     ← SQLite / MongoDB\n"
        "Provider  ← yfinance / CoinGecko（限流退避重试）\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "invalid_request", "message": str(exc), "data": None, "stale": False},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(cache.router)
app.include_router(assets.router)
app.include_router(watchlist.router)
app.include_router(portfolio.router)
app.include_router(market.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Market Dashboard MarketService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
