import asyncio

import httpx
import pytest

from databoard.adapters.scraping import ScrapingAdapter, parse_rows
from databoard.errors import ValidationError
from databoard.models import ColumnMapping

PAGE = """
<html><body>
<table id="quota">
  <tr class="row"><td class="name">alpha</td><td class="used">1,200</td><td class="ok">yes</td></tr>
  <tr class="row"><td class="name">beta</td><td class="used">35</td><td class="ok">no</td></tr>
</table>
</body></html>
"""

COLUMNS = [
    {"name": "name", "expr": ".name"},
    {"name": "used", "expr": ".used", "type": "int"},
    {"name": "ok", "expr": ".ok", "type": "bool"},
]


def _adapter(status=200, body=PAGE) -> ScrapingAdapter:
    return ScrapingAdapter(timeout=5, transport=httpx.MockTransport(lambda r: httpx.Response(status, text=body)))


def test_parse_rows_casts_columns():
    rows = parse_rows(PAGE, "tr.row", [ColumnMapping(**c) for c in COLUMNS])
    assert rows == [
        {"name": "alpha", "used": 1200, "ok": True},
        {"name": "beta", "used": 35, "ok": False},
    ]


def test_parse_rows_without_columns_uses_text():
    rows = parse_rows(PAGE, "td.name", [])
    assert rows == [{"text": "alpha"}, {"text": "beta"}]


def test_parse_rows_missing_column_is_none():
    rows = parse_rows(PAGE, "tr.row", [ColumnMapping(name="x", expr=".missing")])
    assert rows == [{"x": None}, {"x": None}]


def test_invalid_row_selector():
    with pytest.raises(ValidationError):
        parse_rows(PAGE, "tr[", [])


def test_test_and_fetch():
    config = {"url": "https://example.com/quota", "rowSelector": "tr.row", "columns": COLUMNS}
    adapter = _adapter()

    tested = asyncio.run(adapter.test(config))
    assert tested.fields == ["name", "used", "ok"]
    assert tested.structure == [{"name": "string", "used": "number", "ok": "boolean"}]

    fetched = asyncio.run(adapter.fetch({**config, "selectedFields": ["used"]}))
    assert fetched.data == [{"used": 1200}, {"used": 35}]
    assert fetched.fields == ["used"]


def test_fetch_page_error():
    result = asyncio.run(_adapter(status=404).fetch({"url": "https://example.com", "rowSelector": "tr"}))
    assert result.data == []
    assert "404" in result.error
