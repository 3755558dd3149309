"""
代码规则：规范化、品种分类、展示名称

所有基于代码形态的判断（加密货币前缀/后缀、指数前缀、商品代码）集中在本模块，
数据获取层的路由表与解析管线都只调用这里的函数。
"""

import re
from typing import Optional

from market_service.models.market import AssetMetadata, InstrumentType

CRYPTO_PREFIX = "X:"
INDEX_PREFIX = "^"
CRYPTO_PAIR_SUFFIXES = ("-USD", "-USDT", "-USDC", "-EUR")
FUTURES_SUFFIX = "=F"

_SYMBOL_PATTERN = re.compile(r"^[A-Za-z0-9.^:=/_\-]{1,32}$")

# 商品代码 → Yahoo 期货代码
COMMODITY_TICKERS = {
    "XAUUSD": "GC=F",
    "XAGUSD": "SI=F",
    "GC": "GC=F",
    "SI": "SI=F",
    "HG": "HG=F",
    "CL": "CL=F",
    "NG": "NG=F",
    "ZC": "ZC=F",
    "ZS": "ZS=F",
    "ZW": "ZW=F",
}

KNOWN_ETFS = frozenset([
    "SPY", "QQQ", "DIA", "IWM", "VTI", "VOO", "VEA", "VWO",
    "AGG", "BND", "TLT", "IEF", "SHY", "LQD", "HYG", "JNK", "EMB", "TIP",
    "XLK", "XLF", "XLV", "XLE", "XLI", "XLP", "XLY", "XLB", "XLU", "XLRE", "XLC",
    "GLD", "SLV", "GDX", "GDXJ",
    "VUG", "VTV", "VYM", "VXUS", "IVV", "IJH", "IJR", "IWF", "IWD",
    "ARKK", "TQQQ", "SQQQ", "EFA", "EEM", "IEFA", "IEMG",
])

CRYPTO_NAMES = {
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "BNB": "Binance Coin",
    "ADA": "Cardano",
    "SOL": "Solana",
    "XRP": "Ripple",
    "DOT": "Polkadot",
    "DOGE": "Dogecoin",
    "AVAX": "Avalanche",
    "SHIB": "Shiba Inu",
    "MATIC": "Polygon",
    "UNI": "Uniswap",
    "LTC": "Litecoin",
    "ATOM": "Cosmos",
    "LINK": "Chainlink",
    "AAVE": "Aave",
}

INDEX_NAMES = {
    "^GSPC": "S&P 500",
    "^DJI": "Dow Jones",
    "^IXIC": "NASDAQ Composite",
    "^RUT": "Russell 2000",
    "^FTSE": "FTSE 100",
    "^N225": "Nikkei 225",
    "^GSPTSE": "S&P/TSX 60",
}

COMMODITY_NAMES = {
    "XAUUSD": "Gold",
    "XAGUSD": "Silver",
    "CL": "Crude Oil",
    "NG": "Natural Gas",
}

_CATEGORIES = {
    InstrumentType.EQUITY: "equities",
    InstrumentType.ETF: "equities",
    InstrumentType.INDEX: "equities",
    InstrumentType.CRYPTO: "crypto",
    InstrumentType.COMMODITY: "commodities",
}

_NAME_SUFFIXES = re.compile(r"\s+(Inc|Corp|Ltd|LLC|Co)\.?$", re.IGNORECASE)


def normalize_symbol(raw: Optional[str]) -> str:
    """
    规范化代码：去除首尾空白并转大写；
    'X:' 加密货币前缀统一为大写，前缀之后的部分保持原样。
    """
    symbol = (raw or "").strip()
    if symbol[:2].upper() == CRYPTO_PREFIX:
        return CRYPTO_PREFIX + symbol[2:]
    return symbol.upper()


def is_valid_symbol(symbol: str) -> bool:
    return bool(_SYMBOL_PATTERN.match(symbol or ""))


def classify_symbol(symbol: str) -> InstrumentType:
    """按代码形态判断品种类型（规范化之后的代码）"""
    upper = symbol.upper()
    if upper.startswith(CRYPTO_PREFIX) or upper.endswith(CRYPTO_PAIR_SUFFIXES):
        return InstrumentType.CRYPTO
    if upper.startswith(INDEX_PREFIX):
        return InstrumentType.INDEX
    if upper in COMMODITY_TICKERS or upper.endswith(FUTURES_SUFFIX):
        return InstrumentType.COMMODITY
    if upper in KNOWN_ETFS:
        return InstrumentType.ETF
    return InstrumentType.EQUITY


def crypto_base(symbol: str) -> str:
    """X:BTCUSD → BTC，BTC-USD → BTC"""
    upper = symbol.upper()
    if upper.startswith(CRYPTO_PREFIX):
        pair = upper[len(CRYPTO_PREFIX):]
        for quote in ("USDT", "USDC", "USD", "EUR"):
            if pair.endswith(quote) and len(pair) > len(quote):
                return pair[: -len(quote)]
        return pair
    return upper.split("-")[0]


def category_for(instrument_type: InstrumentType) -> str:
    return _CATEGORIES.get(instrument_type, "equities")


def display_name(symbol: str, name: Optional[str] = None) -> str:
    """生成展示名称：优先使用提供商名称（去掉公司后缀），否则按代码推断，最后回退为代码本身"""
    if name and name.strip():
        return _NAME_SUFFIXES.sub("", name.strip()).strip()

    kind = classify_symbol(symbol)
    if kind is InstrumentType.CRYPTO:
        return CRYPTO_NAMES.get(crypto_base(symbol), symbol)
    if kind is InstrumentType.INDEX:
        return INDEX_NAMES.get(symbol.upper(), symbol)
    if kind is InstrumentType.COMMODITY:
        return COMMODITY_NAMES.get(symbol.upper(), symbol)
    return symbol


def default_metadata(symbol: str) -> AssetMetadata:
    """尽力分类得到的默认元数据，用于首次出现的代码或存储不可用时"""
    kind = classify_symbol(symbol)
    return AssetMetadata(
        symbol=symbol,
        display_name=display_name(symbol),
        instrument_type=kind,
        exchange="CRYPTO" if kind is InstrumentType.CRYPTO else "",
        currency="USD",
        category=category_for(kind),
    )
