import asyncio

import httpx
import pytest

from databoard.adapters.api import ApiAdapter, extract_data_path
from databoard.errors import NetworkError, TranslationError, ValidationError

CURL = "curl -X GET 'https://api.example.com/data' -H 'Authorization: Bearer T'"


def _adapter(handler) -> ApiAdapter:
    return ApiAdapter(timeout=5, transport=httpx.MockTransport(handler))


def test_test_returns_fields_and_structure():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=[{"id": 1, "owner": {"name": "a"}}])

    result = asyncio.run(_adapter(handler).test({"curlRequest": CURL}))

    assert seen == {"url": "https://api.example.com/data", "auth": "Bearer T"}
    assert result.success is True
    assert result.status_code == 200
    assert result.fields == ["id", "owner", "owner.name"]
    assert result.structure == [{"id": "number", "owner": {"name": "string"}}]


def test_test_reports_non_2xx_without_raising():
    result = asyncio.run(_adapter(lambda r: httpx.Response(500, text="boom")).test({"curlRequest": CURL}))
    assert result.success is False
    assert result.status_code == 500
    assert result.response == {"raw": "boom"}


def test_test_propagates_translation_error():
    with pytest.raises(TranslationError):
        asyncio.run(_adapter(lambda r: httpx.Response(200)).test({"curlRequest": "curl -H 'a: b'"}))


def test_test_requires_curl_request():
    with pytest.raises(ValidationError) as exc:
        asyncio.run(_adapter(lambda r: httpx.Response(200)).test({}))
    assert "curlRequest" in exc.value.message


def test_network_error_propagates_from_test_but_not_from_fetch():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    adapter = _adapter(handler)
    with pytest.raises(NetworkError):
        asyncio.run(adapter.test({"curlRequest": CURL}))

    result = asyncio.run(adapter.fetch({"curlRequest": CURL}))
    assert result.data == []
    assert result.fields == []
    assert result.error


def test_timeout_is_a_network_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(NetworkError) as exc:
        asyncio.run(_adapter(handler).test({"curlRequest": CURL}))
    assert "timed out" in exc.value.message


def test_fetch_applies_selection_and_display_names():
    payload = [{"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"b": 4}}]
    config = {
        "curlRequest": CURL,
        "selectedFields": ["a.b"],
        "fieldDisplayNames": {"a.b": "Value B"},
    }
    result = asyncio.run(_adapter(lambda r: httpx.Response(200, json=payload)).fetch(config))

    assert result.error is None
    assert result.data == [{"a.b": 1}, {"a.b": 4}]
    assert result.fields == ["a.b"]
    assert result.field_display_names == {"a.b": "Value B"}
    assert "error" not in result.to_response()


def test_fetch_http_error_status_becomes_error_field():
    result = asyncio.run(_adapter(lambda r: httpx.Response(503)).fetch({"curlRequest": CURL}))
    assert result.data == []
    assert "503" in result.error
    assert result.to_response()["error"] == result.error


def test_fetch_unauthorized_becomes_error_field():
    result = asyncio.run(_adapter(lambda r: httpx.Response(401)).fetch({"curlRequest": CURL}))
    assert "authentication failed" in result.error


def test_fetch_with_data_path():
    body = {"meta": {"total": 2}, "items": [{"id": 1}, {"id": 2}]}
    config = {"curlRequest": CURL, "dataPath": "$.items"}
    result = asyncio.run(_adapter(lambda r: httpx.Response(200, json=body)).fetch(config))
    assert result.data == [{"id": 1}, {"id": 2}]
    assert result.fields == ["id"]


def test_extract_data_path():
    body = {"items": [{"id": 1}, {"id": 2}]}
    assert extract_data_path(body, None) is body
    assert extract_data_path(body, "$.missing") == []
    assert extract_data_path(body, "$.items[*].id") == [1, 2]
    with pytest.raises(ValidationError):
        extract_data_path(body, "$[[[")
