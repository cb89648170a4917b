"""
刷新策略：把用户选择的 interval + unit 转换为毫秒轮询周期。
低于 MIN_REFRESH_MS 的周期视为关闭自动刷新，而不是向上取整。
"""

from enum import Enum
from typing import Optional


class RefreshUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


_UNIT_MS = {
    RefreshUnit.SECONDS: 1000,
    RefreshUnit.MINUTES: 60 * 1000,
    RefreshUnit.HOURS: 60 * 60 * 1000,
    RefreshUnit.DAYS: 24 * 60 * 60 * 1000,
    RefreshUnit.WEEKS: 7 * 24 * 60 * 60 * 1000,
    # 固定按 30 天计算，不考虑日历
    RefreshUnit.MONTHS: 30 * 24 * 60 * 60 * 1000,
}

DEFAULT_REFRESH_MS = 5 * 60 * 1000
MIN_REFRESH_MS = 10 * 1000


def to_millis(interval: int | float, unit: str) -> int:
    try:
        factor = _UNIT_MS[RefreshUnit(unit)]
    except ValueError:
        return DEFAULT_REFRESH_MS
    return int(interval * factor)


def effective_refresh_ms(interval: int | float, unit: str) -> Optional[int]:
    """返回实际轮询周期；None 表示自动刷新关闭。"""
    ms = to_millis(interval, unit)
    if ms < MIN_REFRESH_MS:
        return None
    return ms
