"""统一 API 响应模型"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装，stale=True 表示数据来自降级结果"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    stale: bool = False

    @classmethod
    def ok(cls, data: Any = None, message: str = "success", stale: bool = False) -> "ApiResponse":
        return cls(success=True, data=data, message=message, stale=stale)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
