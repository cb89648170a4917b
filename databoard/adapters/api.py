"""
通用 API 适配器：cURL 命令 -> GET 请求 -> 字段发现 / 行展平。
"""

import logging
from typing import Any, Optional

from jsonpath_ng.ext import parse as jp_parse

from databoard.adapters.base import FetchResult, SourceAdapter, SourceTestResult, check_status, parse_body
from databoard.curl import translate
from databoard.errors import ValidationError
from databoard.fields import discover_fields, structure_of
from databoard.flattener import flatten
from databoard.models import ApiConfig, SourceType

logger = logging.getLogger(__name__)


def extract_data_path(body: Any, data_path: Optional[str]) -> Any:
    """按 JSONPath 选取记录所在位置；未配置时返回整个 body。"""
    if not data_path:
        return body

    try:
        expr = jp_parse(data_path)
    except Exception as e:
        raise ValidationError(f"Invalid dataPath '{data_path}': {e}")

    matches = expr.find(body)
    if not matches:
        logger.debug(f"dataPath '{data_path}' 无匹配")
        return []
    if len(matches) == 1:
        return matches[0].value
    return [m.value for m in matches]


class ApiAdapter(SourceAdapter):
    source_type = SourceType.API
    config_model = ApiConfig

    async def _get(self, config: ApiConfig):
        config.require("curl_request")
        request = translate(config.curl_request)
        async with self.client() as client:
            return await self.request(client, request.method, request.url, headers=request.headers)

    async def _test(self, config: ApiConfig) -> SourceTestResult:
        response = await self._get(config)
        body = parse_body(response)
        return SourceTestResult(
            success=response.is_success,
            status_code=response.status_code,
            response=body,
            fields=discover_fields(body),
            structure=structure_of(body),
        )

    async def _fetch(self, config: ApiConfig) -> FetchResult:
        response = await self._get(config)
        check_status(response, "API request")
        payload = extract_data_path(parse_body(response), config.data_path)
        result = flatten(payload, config.selected_fields, config.field_display_names)
        return FetchResult(
            data=result.rows,
            fields=result.fields,
            field_display_names=result.field_display_names,
        )
