"""
数据源运行时状态定义。
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SourceStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


class SourceState(BaseModel):
    """数据源的运行时状态（仅保存在内存中）。"""
    source_id: str
    status: SourceStatus = SourceStatus.ACTIVE
    message: Optional[str] = None
    last_updated: float = 0.0
