"""
行情服务异常体系

所有业务异常均继承 :class:`MarketServiceError`。
除 :class:`InvalidRequest` 外，其余异常都在各层边界被捕获并记录日志，
不会穿透解析管线。
"""

from typing import Optional


class MarketServiceError(Exception):
    """行情服务异常基类"""


class InvalidRequest(MarketServiceError):
    """请求参数非法（代码为空、区间倒置、日期格式错误等），直接返回调用方，不重试"""


class CacheUnavailable(MarketServiceError):
    """缓存读写失败，跳过缓存层"""


class StoreUnavailable(MarketServiceError):
    """持久化存储读写失败，管线降级为仅使用提供商"""


class ProviderError(MarketServiceError):
    """上游行情提供商异常基类"""


class RateLimited(ProviderError):
    """上游限流（HTTP 429 等），由调用方指数退避重试"""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(ProviderError):
    """网络错误、超时、响应格式异常，或限流重试耗尽"""


__all__ = [
    "MarketServiceError",
    "InvalidRequest",
    "CacheUnavailable",
    "StoreUnavailable",
    "ProviderError",
    "RateLimited",
    "ProviderUnavailable",
]
