import asyncio
import json

import httpx
import pytest

from databoard.adapters.smax import SMAX_FIELDS, SMAX_SERVICES, SmaxAdapter, map_entity
from databoard.errors import AuthenticationError, ValidationError

CONFIG = {
    "smaxUrl": "https://smax.example.com",
    "smaxTenantId": "123456",
    "smaxUsername": "agent",
    "smaxPassword": "pw",
}

LOGIN_PATH = "/auth/authentication-endpoint/authenticate/login"

ENTITY = {
    "entity_type": "Incident",
    "properties": {
        "Id": "1001",
        "DisplayLabel": "Printer broken",
        "Status": "Ready",
        "Priority": "HighPriority",
        "CreateTime": 1700000000000,
        "AssignedToPerson": "42",
    },
    "related_properties": {"AssignedToPerson": {"DisplayLabel": "Jane Doe"}},
}


def _smax(routes: dict, login=None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == LOGIN_PATH:
            return login or httpx.Response(200, text="tok-1")
        response = routes.get(request.url.path)
        return response if response is not None else httpx.Response(404)

    return SmaxAdapter(timeout=5, transport=httpx.MockTransport(handler)), calls


def test_map_entity_converts_times_and_related_names():
    row = map_entity(ENTITY)
    assert list(row) == SMAX_FIELDS
    assert row["Id"] == "1001"
    assert row["CreateTime"] == "2023-11-14T22:13:20+00:00"
    assert row["AssignedToPerson"] == "Jane Doe"
    assert row["CloseTime"] is None


def test_test_logs_in_and_lists_services():
    adapter, calls = _smax({
        "/rest/123456/metadata/ui/entity-descriptors": httpx.Response(200, json={"entity_descriptors": []}),
        "/rest/123456/personalization/person/me": httpx.Response(200, json={"Name": "Agent"}),
    })

    result = asyncio.run(adapter.test(CONFIG))

    login = calls[0]
    assert login.method == "POST"
    assert login.url.params["TENANTID"] == "123456"
    assert json.loads(login.content) == {"login": "agent", "password": "pw"}
    assert calls[1].headers["Cookie"] == "SMAX_AUTH_TOKEN=tok-1"
    assert calls[1].headers["Authorization"] == "Bearer tok-1"
    assert result.success is True
    assert result.services == SMAX_SERVICES
    assert result.user == {"Name": "Agent"}
    assert result.fields == SMAX_FIELDS


def test_test_accepts_json_token_and_tolerates_missing_profile():
    adapter, calls = _smax(
        {"/rest/123456/metadata/ui/entity-descriptors": httpx.Response(200, json={})},
        login=httpx.Response(200, json={"token": "tok-json"}),
    )
    result = asyncio.run(adapter.test(CONFIG))
    assert calls[1].headers["Authorization"] == "Bearer tok-json"
    assert result.user is None
    assert "user" not in result.to_response()


def test_test_empty_token_is_authentication_failure():
    adapter, _ = _smax({}, login=httpx.Response(200, text="   "))
    with pytest.raises(AuthenticationError):
        asyncio.run(adapter.test(CONFIG))


def test_test_rejected_login():
    adapter, _ = _smax({}, login=httpx.Response(401))
    with pytest.raises(AuthenticationError):
        asyncio.run(adapter.test(CONFIG))


def test_fetch_queries_entities():
    adapter, calls = _smax({"/rest/123456/ems/Incident": httpx.Response(200, json={"entities": [ENTITY]})})
    config = {
        **CONFIG,
        "selectedSmaxService": "Incident",
        "smaxQuery": "Status='Ready'",
        "selectedFields": ["Id", "AssignedToPerson"],
    }

    result = asyncio.run(adapter.fetch(config))

    assert result.error is None
    assert result.data == [{"Id": "1001", "AssignedToPerson": "Jane Doe"}]
    assert result.fields == ["Id", "AssignedToPerson"]
    assert result.field_display_names == {"Id": "ID", "AssignedToPerson": "Assigned To"}
    params = calls[1].url.params
    assert params["filter"] == "Status='Ready'"
    assert params["size"] == "100"
    assert params["layout"] == ",".join(SMAX_FIELDS)


def test_fetch_unknown_service_is_reported():
    adapter, calls = _smax({})
    result = asyncio.run(adapter.fetch({**CONFIG, "selectedSmaxService": "Ticket"}))
    assert "Unsupported SMAX service" in result.error
    assert calls == []


def test_test_requires_tenant():
    adapter, _ = _smax({})
    with pytest.raises(ValidationError) as exc:
        asyncio.run(adapter.test({**CONFIG, "smaxTenantId": ""}))
    assert "smaxTenantId" in exc.value.message
