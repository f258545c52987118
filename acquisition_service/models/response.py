"""统一 API 响应模型"""

from typing import Any, Optional

from pydantic import BaseModel


class ApiResponse(BaseModel):
    """
    标准 API 响应封装

    degraded=True 表示数据来自过期缓存或部分上游获取失败，
    调用方可据此提示“行情可能延迟”。
    """
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    degraded: bool = False

    @classmethod
    def ok(cls, data: Any = None, message: str = "success", degraded: bool = False) -> "ApiResponse":
        return cls(success=True, data=data, message=message, degraded=degraded)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
