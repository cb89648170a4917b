"""
执行器：按数据源类型调度适配器，运行 test / fetch。
维护内存中的 SourceState。
"""

import logging
import time
from typing import Any, Dict

import httpx

from databoard.adapters.base import DEFAULT_TIMEOUT, FetchResult, SourceTestResult
from databoard.adapters.registry import get_adapter
from databoard.models import DataSource, SourceType, parse_source_config
from databoard.source_state import SourceState, SourceStatus
from databoard.storage import Storage

logger = logging.getLogger(__name__)

DISABLED_MESSAGE = "Data source is disabled"


class Executor:
    """
    数据源的 test / fetch 入口。

    同一数据源的并发 fetch 不做合并，各自独立执行。
    """

    def __init__(
        self,
        storage: Storage,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._storage = storage
        self._timeout = timeout
        self._transport = transport
        # source_id -> SourceState
        self._states: Dict[str, SourceState] = {}

    def get_source_state(self, source_id: str) -> SourceState:
        """获取指定数据源的运行时状态。"""
        if source_id not in self._states:
            self._states[source_id] = SourceState(source_id=source_id)
        return self._states[source_id]

    def forget_source(self, source_id: str):
        """数据源删除后丢弃其运行时状态。"""
        self._states.pop(source_id, None)

    def _update_state(self, source_id: str, status: SourceStatus, message: str | None = None):
        state = self.get_source_state(source_id)
        if state.status != status:
            logger.info(f"[{source_id}] State -> {status.value}: {message}")
        state.status = status
        state.message = message
        state.last_updated = time.time()

    def _adapter(self, source_type: str | SourceType):
        return get_adapter(source_type, timeout=self._timeout, transport=self._transport)

    async def test_source(self, source_type: str | SourceType, raw_config: Dict[str, Any] | None) -> SourceTestResult:
        """试运行未保存的配置，错误直接抛出。"""
        config = parse_source_config(source_type, raw_config)
        return await self._adapter(source_type).test(config)

    async def fetch_source(self, source: DataSource) -> FetchResult:
        """
        拉取并标准化数据源数据，从不抛出。

        lastPullAt 在调用适配器之前更新，无论成功与否。
        """
        self._storage.touch_last_pull(source.id)

        if not source.is_active:
            self._update_state(source.id, SourceStatus.DISABLED, DISABLED_MESSAGE)
            return FetchResult(error=DISABLED_MESSAGE)

        result = await self._adapter(source.type).fetch(source.config, source_id=source.id)
        if result.error:
            self._update_state(source.id, SourceStatus.ERROR, result.error)
        else:
            self._update_state(source.id, SourceStatus.ACTIVE)
            logger.debug(f"[{source.id}] Fetched {len(result.data)} rows")
        return result
