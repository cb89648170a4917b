"""
网页抓取适配器：GET 页面 -> CSS Selector 选取行 -> 按列提取文本。
"""

import logging
from typing import Any

from bs4 import BeautifulSoup

from databoard.adapters.base import FetchResult, SourceAdapter, SourceTestResult, check_status
from databoard.errors import ValidationError
from databoard.fields import discover_fields, structure_of
from databoard.flattener import flatten
from databoard.models import ColumnMapping, ScrapingConfig, SourceType

logger = logging.getLogger(__name__)

SAMPLE_ROWS = 5


def _cast_value(value: Any, type_hint: str) -> Any:
    """将提取的文本按类型转换。"""
    if value is None:
        return None
    try:
        if type_hint == "int":
            return int(float(str(value).replace(",", "")))
        elif type_hint == "float":
            return float(str(value).replace(",", ""))
        elif type_hint == "bool":
            return str(value).lower() in ("true", "1", "yes")
        return str(value)
    except (ValueError, TypeError):
        logger.warning(f"类型转换失败: {value!r} -> {type_hint}")
        return value


def parse_rows(html: str, row_selector: str, columns: list[ColumnMapping]) -> list[dict[str, Any]]:
    soup = BeautifulSoup(html, "lxml")
    try:
        elements = soup.select(row_selector)
    except Exception as e:
        raise ValidationError(f"Invalid rowSelector '{row_selector}': {e}")

    rows = []
    for element in elements:
        if not columns:
            rows.append({"text": element.get_text(strip=True)})
            continue
        row = {}
        for column in columns:
            try:
                found = element.select_one(column.expr)
            except Exception as e:
                raise ValidationError(f"Invalid selector for column '{column.name}': {e}")
            raw = found.get_text(strip=True) if found is not None else None
            row[column.name] = _cast_value(raw, column.type)
        rows.append(row)
    return rows


class ScrapingAdapter(SourceAdapter):
    source_type = SourceType.SCRAPING
    config_model = ScrapingConfig

    async def _rows(self, config: ScrapingConfig) -> tuple[int, list[dict[str, Any]]]:
        config.require("url", "row_selector")
        async with self.client(headers={"Accept": "text/html,application/xhtml+xml"}) as client:
            response = await self.request(client, "GET", config.url)
        check_status(response, "Page request")
        return response.status_code, parse_rows(response.text, config.row_selector, config.columns)

    async def _test(self, config: ScrapingConfig) -> SourceTestResult:
        status_code, rows = await self._rows(config)
        sample = rows[:SAMPLE_ROWS]
        return SourceTestResult(
            success=True,
            status_code=status_code,
            response=sample,
            fields=discover_fields(sample),
            structure=structure_of(sample),
        )

    async def _fetch(self, config: ScrapingConfig) -> FetchResult:
        _, rows = await self._rows(config)
        result = flatten(rows, config.selected_fields, config.field_display_names)
        return FetchResult(
            data=result.rows,
            fields=result.fields,
            field_display_names=result.field_display_names,
        )
