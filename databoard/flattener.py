"""
行展平器：把 API 返回的数组 / 对象转换为扁平记录序列，
并按选中的字段过滤、生成字段显示名。
"""

import json
from typing import Any, Optional

from pydantic import BaseModel, Field


class FlattenResult(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)
    field_display_names: dict[str, str] = Field(default_factory=dict)


def default_display_name(field: str) -> str:
    """例如 a.b.c -> c。"""
    return field.rsplit(".", 1)[-1]


def display_names_for(
    fields: list[str],
    overrides: dict[str, str] | None = None,
    defaults: dict[str, str] | None = None,
) -> dict[str, str]:
    """用户配置优先，其次是适配器默认名，最后取路径末段。"""
    overrides = overrides or {}
    defaults = defaults or {}
    return {f: overrides.get(f) or defaults.get(f) or default_display_name(f) for f in fields}


def flatten_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    单层展平：嵌套对象合并到父级 key 空间（parent.key），只做一次；
    数组保持原样。
    """
    row: dict[str, Any] = {}
    for key, value in record.items():
        if isinstance(value, dict):
            for child_key, child_value in value.items():
                row[f"{key}.{child_key}"] = child_value
        else:
            row[key] = value
    return row


def _to_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        rows = []
        for item in payload:
            if isinstance(item, dict):
                rows.append(flatten_record(item))
            else:
                rows.append({"value": item})
        return rows

    if isinstance(payload, dict):
        # 对象 payload：每个顶层 key 转置为一行
        return [{"name": key, "value": value} for key, value in payload.items()]

    if payload is None:
        return []
    return [{"value": payload}]


def _collect_fields(rows: list[dict[str, Any]]) -> list[str]:
    fields: list[str] = []
    seen = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                fields.append(key)
    return fields


def filter_rows(
    rows: list[dict[str, Any]],
    selected_fields: Optional[list[str]],
) -> tuple[list[dict[str, Any]], list[str]]:
    """按选中字段过滤行；未选择时保留全部字段。"""
    if not selected_fields:
        return rows, _collect_fields(rows)

    selected = set(selected_fields)
    filtered = [{k: v for k, v in row.items() if k in selected} for row in rows]
    present = set(_collect_fields(filtered))
    fields = [f for f in selected_fields if f in present]
    return filtered, fields


def flatten(
    payload: Any,
    selected_fields: Optional[list[str]] = None,
    display_names: dict[str, str] | None = None,
) -> FlattenResult:
    rows, fields = filter_rows(_to_rows(payload), selected_fields)
    return FlattenResult(
        rows=rows,
        fields=fields,
        field_display_names=display_names_for(fields, display_names),
    )


# ── 展示层单元格格式化 ─────────────────────────────────

def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
