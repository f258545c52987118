"""会话状态 / 行情模式相关数据模型"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SessionState(BaseModel):
    """持久化的会话状态（本地与远端各一份完整副本）"""
    user_id: str
    portfolio_snapshot: Dict[str, Any] = Field(default_factory=dict)
    active_positions: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: float
    schema_version: str = "1.0"


class SaveStateRequest(BaseModel):
    portfolio_snapshot: Dict[str, Any] = Field(default_factory=dict)
    active_positions: List[Dict[str, Any]] = Field(default_factory=list)


class MajorEventRequest(BaseModel):
    title: str
    ttl_seconds: Optional[float] = None
