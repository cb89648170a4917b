"""
数据源适配器基类。

每个适配器提供两个入口，错误契约不同：
  - test():  配置阶段的试运行，错误直接抛出，配置界面据此阻止保存
  - fetch(): 定时刷新，所有错误在此处捕获并转换为 FetchResult.error，从不抛出
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from databoard.errors import AuthenticationError, NetworkError, SourceError, ValidationError
from databoard.models import BaseSourceConfig, CamelModel, SourceType, parse_source_config, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class SourceTestResult(CamelModel):
    """配置阶段 test 的返回。"""
    success: bool = True
    status_code: Optional[int] = None
    response: Any = None
    fields: List[str] = Field(default_factory=list)
    structure: Any = None
    projects: Optional[List[Dict[str, Any]]] = None
    saved_filters: Optional[List[Dict[str, Any]]] = None
    services: Optional[List[Dict[str, Any]]] = None
    user: Optional[Dict[str, Any]] = None

    def to_response(self) -> dict[str, Any]:
        record = self.to_record()
        for key in ("statusCode", "projects", "savedFilters", "services", "user"):
            if record.get(key) is None:
                record.pop(key, None)
        return record


class FetchResult(CamelModel):
    """展示层消费的标准化数据。"""
    data: List[Dict[str, Any]] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    field_display_names: Dict[str, str] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        record = self.to_record()
        if record.get("error") is None:
            record.pop("error", None)
        return record


def parse_body(response: httpx.Response) -> Any:
    """优先按 JSON 解析，失败时包装为 {"raw": text}。"""
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


def check_status(response: httpx.Response, what: str):
    if response.status_code in (401, 403):
        raise AuthenticationError(f"{what}: authentication failed (HTTP {response.status_code})")
    if not response.is_success:
        raise NetworkError(f"{what}: HTTP {response.status_code}", status_code=response.status_code)


class SourceAdapter:
    source_type: SourceType
    config_model: type[BaseSourceConfig] = BaseSourceConfig

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    # ── HTTP ──────────────────────────────────────────

    def client(self, **kwargs) -> httpx.AsyncClient:
        """所有外部调用都带超时。"""
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            follow_redirects=True,
            **kwargs,
        )

    async def request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise NetworkError(f"Request to {url} timed out after {self.timeout:g}s")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Request to {url} failed: {e}")

    # ── 配置 ──────────────────────────────────────────

    def coerce_config(self, config: BaseSourceConfig | dict[str, Any]) -> BaseSourceConfig:
        if isinstance(config, self.config_model):
            return config
        if isinstance(config, BaseModel):
            raise ValidationError(
                f"{self.source_type.value} adapter cannot use {type(config).__name__}"
            )
        return parse_source_config(self.source_type, config)

    # ── 入口 ──────────────────────────────────────────

    async def test(self, config: BaseSourceConfig | dict[str, Any]) -> SourceTestResult:
        return await self._test(self.coerce_config(config))

    async def fetch(self, config: BaseSourceConfig | dict[str, Any], source_id: str = "-") -> FetchResult:
        try:
            return await self._fetch(self.coerce_config(config))
        except SourceError as e:
            logger.error(f"[{source_id}] Fetch failed ({type(e).__name__}): {e.message}")
            return FetchResult(error=e.message)
        except Exception as e:
            logger.error(f"[{source_id}] Fetch failed unexpectedly: {e}", exc_info=True)
            return FetchResult(error=str(e) or type(e).__name__)

    async def _test(self, config: BaseSourceConfig) -> SourceTestResult:
        raise NotImplementedError

    async def _fetch(self, config: BaseSourceConfig) -> FetchResult:
        raise NotImplementedError
