"""
适配器注册表：按数据源类型选择适配器。
"""

import httpx

from databoard.adapters.api import ApiAdapter
from databoard.adapters.base import DEFAULT_TIMEOUT, SourceAdapter
from databoard.adapters.database import DatabaseAdapter
from databoard.adapters.jira import JiraAdapter
from databoard.adapters.scraping import ScrapingAdapter
from databoard.adapters.smax import SmaxAdapter
from databoard.models import SourceType, parse_source_type

ADAPTERS: dict[SourceType, type[SourceAdapter]] = {
    SourceType.API: ApiAdapter,
    SourceType.JIRA: JiraAdapter,
    SourceType.SMAX: SmaxAdapter,
    SourceType.SCRAPING: ScrapingAdapter,
    SourceType.DATABASE: DatabaseAdapter,
}


def get_adapter(
    source_type: str | SourceType,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SourceAdapter:
    return ADAPTERS[parse_source_type(source_type)](timeout=timeout, transport=transport)
