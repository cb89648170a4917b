"""
字段发现：从任意 JSON 值中枚举可寻址的字段路径（点号分隔），
并生成一个用于人工查看的结构摘要。
"""

from typing import Any


def discover_fields(value: Any, prefix: str = "") -> list[str]:
    """
    深度优先枚举字段路径。父路径排在子路径之前；
    数组只取第一个元素推断结构，空数组不贡献字段。
    """
    fields: list[str] = []

    if isinstance(value, list):
        if value:
            fields.extend(discover_fields(value[0], prefix))
        return fields

    if isinstance(value, dict):
        for key, child in value.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            fields.append(path)
            if isinstance(child, (dict, list)):
                fields.extend(discover_fields(child, path))

    return fields


def _type_tag(value: Any) -> str:
    # 与前端 typeof 的取值保持一致
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if value is None:
        return "object"
    return "undefined"


def structure_of(value: Any) -> Any:
    """返回结构树：标量 -> 类型名，数组 -> 单元素样例，对象 -> key 映射。"""
    if isinstance(value, list):
        return [structure_of(value[0])] if value else []
    if isinstance(value, dict):
        return {key: structure_of(child) for key, child in value.items()}
    return _type_tag(value)

