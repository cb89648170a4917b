"""
OpenText SMAX 适配器。

先用用户名密码换取 token（每次调用都重新登录，不保留会话），
再访问 EMS REST 接口查询实体。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from databoard.adapters.base import FetchResult, SourceAdapter, SourceTestResult, check_status, parse_body
from databoard.errors import AuthenticationError, NetworkError, SourceError, ValidationError
from databoard.fields import structure_of
from databoard.flattener import display_names_for, filter_rows
from databoard.models import SmaxConfig, SourceType

logger = logging.getLogger(__name__)

MAX_RESULTS = 100

SMAX_SERVICES = [
    {"id": "Request", "name": "Requests"},
    {"id": "Incident", "name": "Incidents"},
    {"id": "Problem", "name": "Problems"},
    {"id": "Change", "name": "Changes"},
    {"id": "Task", "name": "Tasks"},
    {"id": "KnowledgeDocument", "name": "Knowledge Documents"},
]

SMAX_FIELDS = [
    "Id", "DisplayLabel", "Description", "Status", "Phase", "Priority",
    "Urgency", "ImpactScope", "Category", "RequestedByPerson", "AssignedToPerson",
    "AssignedToGroup", "CreateTime", "LastUpdateTime", "CloseTime", "Service",
]

DEFAULT_DISPLAY_NAMES = {
    "Id": "ID",
    "DisplayLabel": "Title",
    "Description": "Description",
    "Status": "Status",
    "Phase": "Phase",
    "Priority": "Priority",
    "Urgency": "Urgency",
    "ImpactScope": "Impact",
    "Category": "Category",
    "RequestedByPerson": "Requested By",
    "AssignedToPerson": "Assigned To",
    "AssignedToGroup": "Assignment Group",
    "CreateTime": "Created",
    "LastUpdateTime": "Updated",
    "CloseTime": "Closed",
    "Service": "Service",
}

_TIME_FIELDS = {"CreateTime", "LastUpdateTime", "CloseTime"}
_RELATED_FIELDS = {"RequestedByPerson", "AssignedToPerson", "AssignedToGroup", "Service", "Category"}


def _epoch_ms_to_iso(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    return value


def map_entity(entity: dict[str, Any]) -> dict[str, Any]:
    props = entity.get("properties") or {}
    related = entity.get("related_properties") or {}
    row = {}
    for field in SMAX_FIELDS:
        value = props.get(field)
        if field in _TIME_FIELDS:
            value = _epoch_ms_to_iso(value)
        elif field in _RELATED_FIELDS and isinstance(related.get(field), dict):
            # 关联实体优先显示名称
            value = related[field].get("DisplayLabel") or related[field].get("Name") or value
        row[field] = value
    return row


def _extract_token(response: httpx.Response) -> Optional[str]:
    body = parse_body(response)
    if isinstance(body, dict):
        token = body.get("token") or body.get("raw")
    elif isinstance(body, str):
        token = body
    else:
        token = None
    token = (token or "").strip()
    return token or None


class SmaxAdapter(SourceAdapter):
    source_type = SourceType.SMAX
    config_model = SmaxConfig

    async def _login(self, client: httpx.AsyncClient, config: SmaxConfig) -> str:
        base = config.smax_url.rstrip("/")
        response = await self.request(
            client,
            "POST",
            f"{base}/auth/authentication-endpoint/authenticate/login",
            params={"TENANTID": config.smax_tenant_id},
            json={"login": config.smax_username, "password": config.smax_password},
        )
        check_status(response, "SMAX login")
        token = _extract_token(response)
        if not token:
            raise AuthenticationError("SMAX authentication failed: no token returned")
        return token

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {
            "Cookie": f"SMAX_AUTH_TOKEN={token}",
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def _query(
        self,
        client: httpx.AsyncClient,
        config: SmaxConfig,
        headers: dict[str, str],
        limit: int,
    ) -> list[dict]:
        base = config.smax_url.rstrip("/")
        params = {"layout": ",".join(SMAX_FIELDS), "size": limit}
        if config.smax_query and config.smax_query.strip():
            params["filter"] = config.smax_query.strip()

        response = await self.request(
            client,
            "GET",
            f"{base}/rest/{config.smax_tenant_id}/ems/{config.selected_smax_service}",
            params=params,
            headers=headers,
        )
        check_status(response, "SMAX query")
        body = parse_body(response)
        if not isinstance(body, dict) or not isinstance(body.get("entities"), list):
            raise NetworkError("SMAX query returned an unexpected response")
        return body["entities"]

    def _check_service(self, config: SmaxConfig):
        config.require("selected_smax_service")
        if config.selected_smax_service not in {s["id"] for s in SMAX_SERVICES}:
            raise ValidationError(f"Unsupported SMAX service: {config.selected_smax_service}")

    async def _test(self, config: SmaxConfig) -> SourceTestResult:
        config.require("smax_url", "smax_tenant_id", "smax_username", "smax_password")
        base = config.smax_url.rstrip("/")
        tenant = config.smax_tenant_id

        async with self.client() as client:
            token = await self._login(client, config)
            headers = self._auth_headers(token)

            response = await self.request(
                client, "GET", f"{base}/rest/{tenant}/metadata/ui/entity-descriptors", headers=headers
            )
            check_status(response, "SMAX metadata")

            user = None
            try:
                response = await self.request(
                    client, "GET", f"{base}/rest/{tenant}/personalization/person/me", headers=headers
                )
                check_status(response, "SMAX user profile")
                body = parse_body(response)
                if isinstance(body, dict):
                    user = body
            except SourceError as e:
                logger.warning(f"获取 SMAX 用户信息失败: {e.message}")

            sample: dict[str, Any] = {}
            if config.selected_smax_service:
                try:
                    self._check_service(config)
                    entities = await self._query(client, config, headers, 1)
                    if entities:
                        sample = map_entity(entities[0])
                except SourceError as e:
                    logger.warning(f"SMAX 样例查询失败: {e.message}")

        return SourceTestResult(
            success=True,
            status_code=200,
            response=sample,
            fields=list(SMAX_FIELDS),
            structure=structure_of(sample) if sample else {},
            services=[dict(s) for s in SMAX_SERVICES],
            user=user,
        )

    async def _fetch(self, config: SmaxConfig) -> FetchResult:
        config.require("smax_url", "smax_tenant_id", "smax_username", "smax_password")
        self._check_service(config)

        async with self.client() as client:
            token = await self._login(client, config)
            entities = await self._query(client, config, self._auth_headers(token), MAX_RESULTS)

        rows = [map_entity(e) for e in entities[:MAX_RESULTS] if isinstance(e, dict)]
        rows, fields = filter_rows(rows, config.selected_fields)
        names = display_names_for(fields, config.field_display_names, DEFAULT_DISPLAY_NAMES)
        return FetchResult(data=rows, fields=fields, field_display_names=names)
