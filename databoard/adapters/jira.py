"""
JIRA 适配器：Basic Auth 访问 REST API v2。

test 校验凭证（项目列表 + 当前用户），并尽力拉取过滤器；
fetch 通过 JQL 查询 issue 并映射为固定的扁平字段。
"""

import base64
import logging
from typing import Any, Optional

import httpx

from databoard.adapters.base import FetchResult, SourceAdapter, SourceTestResult, check_status, parse_body
from databoard.errors import AuthenticationError, NetworkError, SourceError
from databoard.fields import structure_of
from databoard.flattener import display_names_for, filter_rows
from databoard.models import JiraConfig, SourceType

logger = logging.getLogger(__name__)

MAX_RESULTS = 100
FILTER_SEARCH_LIMIT = 20

STORY_POINTS_FIELD = "customfield_10016"
SPRINT_FIELD = "customfield_10020"

JIRA_FIELDS = [
    "key", "summary", "status", "assignee", "reporter", "priority", "issueType",
    "created", "updated", "resolved", "project", "projectKey", "description",
    "labels", "components", "fixVersions", "storyPoints", "sprint",
]

DEFAULT_DISPLAY_NAMES = {
    "key": "Key",
    "summary": "Summary",
    "status": "Status",
    "assignee": "Assignee",
    "reporter": "Reporter",
    "priority": "Priority",
    "issueType": "Issue Type",
    "created": "Created",
    "updated": "Updated",
    "resolved": "Resolved",
    "project": "Project",
    "projectKey": "Project Key",
    "description": "Description",
    "labels": "Labels",
    "components": "Components",
    "fixVersions": "Fix Versions",
    "storyPoints": "Story Points",
    "sprint": "Sprint",
}

# search 接口需要请求的原始 JIRA 字段
_REQUEST_FIELDS = [
    "summary", "status", "assignee", "reporter", "priority", "issuetype",
    "created", "updated", "resolutiondate", "project", "description",
    "labels", "components", "fixVersions", STORY_POINTS_FIELD, SPRINT_FIELD,
]


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_jql(project: Optional[str], query: Optional[str]) -> str:
    query = (query or "").strip()
    if project:
        jql = f'project = "{project}"'
        if query:
            jql += f" AND ({query})"
        return jql
    if query:
        return query
    return "ORDER BY created DESC"


def _attr(obj: Any, key: str = "name") -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def _join_names(items: Any) -> str:
    if not isinstance(items, list):
        return ""
    names = [item.get("name", "") if isinstance(item, dict) else str(item) for item in items if item is not None]
    return ", ".join(n for n in names if n)


def _sprint_name(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[-1] if value else None
    if isinstance(value, dict):
        return value.get("name")
    return value


def map_issue(issue: dict[str, Any]) -> dict[str, Any]:
    f = issue.get("fields") or {}
    project = f.get("project")
    return {
        "key": issue.get("key"),
        "summary": f.get("summary"),
        "status": _attr(f.get("status")),
        "assignee": _attr(f.get("assignee"), "displayName"),
        "reporter": _attr(f.get("reporter"), "displayName"),
        "priority": _attr(f.get("priority")),
        "issueType": _attr(f.get("issuetype")),
        "created": f.get("created"),
        "updated": f.get("updated"),
        "resolved": f.get("resolutiondate"),
        "project": _attr(project),
        "projectKey": _attr(project, "key"),
        "description": f.get("description"),
        "labels": _join_names(f.get("labels")),
        "components": _join_names(f.get("components")),
        "fixVersions": _join_names(f.get("fixVersions")),
        "storyPoints": f.get(STORY_POINTS_FIELD),
        "sprint": _sprint_name(f.get(SPRINT_FIELD)),
    }


def merge_filters(favourites: list[dict], searched: list[dict]) -> list[dict]:
    """按 id 合并，收藏的过滤器优先。"""
    merged: dict[str, dict] = {}
    for item in favourites:
        merged[str(item.get("id"))] = {
            "id": item.get("id"),
            "name": item.get("name"),
            "jql": item.get("jql"),
            "favourite": True,
        }
    for item in searched:
        key = str(item.get("id"))
        if key in merged:
            continue
        merged[key] = {
            "id": item.get("id"),
            "name": item.get("name"),
            "jql": item.get("jql"),
            "favourite": bool(item.get("favourite", False)),
        }
    return list(merged.values())


class JiraAdapter(SourceAdapter):
    source_type = SourceType.JIRA
    config_model = JiraConfig

    def _headers(self, config: JiraConfig) -> dict[str, str]:
        return {
            "Authorization": basic_auth_header(config.jira_username, config.jira_password),
            "Accept": "application/json",
        }

    async def _get_json(self, client: httpx.AsyncClient, url: str, what: str, **kwargs) -> Any:
        response = await self.request(client, "GET", url, **kwargs)
        check_status(response, what)
        return parse_body(response)

    async def _search(self, client: httpx.AsyncClient, base: str, jql: str, limit: int) -> list[dict]:
        body = await self._get_json(
            client,
            f"{base}/rest/api/2/search",
            "JIRA search",
            params={"jql": jql, "maxResults": limit, "fields": ",".join(_REQUEST_FIELDS)},
        )
        if not isinstance(body, dict) or not isinstance(body.get("issues"), list):
            raise NetworkError("JIRA search returned an unexpected response")
        return body["issues"]

    async def _filters(self, client: httpx.AsyncClient, base: str) -> list[dict]:
        favourites: list[dict] = []
        searched: list[dict] = []
        try:
            body = await self._get_json(client, f"{base}/rest/api/2/filter/favourite", "JIRA favourite filters")
            if isinstance(body, list):
                favourites = body
        except SourceError as e:
            logger.warning(f"获取 JIRA 收藏过滤器失败: {e.message}")
        try:
            body = await self._get_json(
                client,
                f"{base}/rest/api/2/filter/search",
                "JIRA filter search",
                params={"maxResults": FILTER_SEARCH_LIMIT, "expand": "jql"},
            )
            if isinstance(body, dict) and isinstance(body.get("values"), list):
                searched = body["values"][:FILTER_SEARCH_LIMIT]
        except SourceError as e:
            logger.warning(f"搜索 JIRA 过滤器失败: {e.message}")
        return merge_filters(favourites, searched)

    async def _test(self, config: JiraConfig) -> SourceTestResult:
        config.require("jira_url", "jira_username", "jira_password")
        base = config.jira_url.rstrip("/")

        async with self.client(headers=self._headers(config)) as client:
            projects = await self._get_json(client, f"{base}/rest/api/2/project", "JIRA projects")
            if not isinstance(projects, list):
                raise AuthenticationError("JIRA authentication failed: project list was not returned")

            user = await self._get_json(client, f"{base}/rest/api/2/myself", "JIRA user profile")
            # 有些网关会返回 200 + 空 body，必须以 accountId 为准
            if not isinstance(user, dict) or not user.get("accountId"):
                raise AuthenticationError("JIRA authentication failed: user profile has no accountId")

            saved_filters = await self._filters(client, base)

            sample: dict[str, Any] = {}
            try:
                issues = await self._search(
                    client, base, build_jql(config.selected_jira_project, config.jira_query), 1
                )
                if issues:
                    sample = map_issue(issues[0])
            except SourceError as e:
                logger.warning(f"JIRA 样例查询失败: {e.message}")

        return SourceTestResult(
            success=True,
            status_code=200,
            response=sample,
            fields=list(JIRA_FIELDS),
            structure=structure_of(sample) if sample else {},
            projects=[
                {"id": p.get("id"), "key": p.get("key"), "name": p.get("name")}
                for p in projects
                if isinstance(p, dict)
            ],
            saved_filters=saved_filters,
            user={
                "accountId": user.get("accountId"),
                "displayName": user.get("displayName"),
                "emailAddress": user.get("emailAddress"),
            },
        )

    async def _fetch(self, config: JiraConfig) -> FetchResult:
        config.require("jira_url", "jira_username", "jira_password")
        base = config.jira_url.rstrip("/")
        jql = build_jql(config.selected_jira_project, config.jira_query)
        logger.debug(f"JIRA JQL: {jql}")

        async with self.client(headers=self._headers(config)) as client:
            issues = await self._search(client, base, jql, MAX_RESULTS)

        rows = [map_issue(issue) for issue in issues if isinstance(issue, dict)]
        rows, fields = filter_rows(rows, config.selected_fields)

        names = display_names_for(fields, config.field_display_names, DEFAULT_DISPLAY_NAMES)
        return FetchResult(data=rows, fields=fields, field_display_names=names)
