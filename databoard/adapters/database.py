"""
数据库查询适配器：SQLAlchemy 执行只读查询，结果行交给展平器。
同步驱动在线程中运行，并受统一的超时约束。
"""

import asyncio
import logging
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.exc import ArgumentError, DBAPIError, NoSuchModuleError, OperationalError, SQLAlchemyError

from databoard.adapters.base import FetchResult, SourceAdapter, SourceTestResult
from databoard.errors import NetworkError, ValidationError
from databoard.fields import discover_fields, structure_of
from databoard.flattener import flatten
from databoard.models import DatabaseConfig, SourceType

logger = logging.getLogger(__name__)

SAMPLE_ROWS = 5


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def run_query(connection_url: str, query: str, limit: int) -> list[dict[str, Any]]:
    """同步执行查询，返回至多 limit 行。"""
    try:
        engine = create_engine(connection_url)
    except (ArgumentError, NoSuchModuleError) as e:
        raise ValidationError(f"Invalid connectionUrl: {e}")

    try:
        with engine.connect() as conn:
            result = conn.execute(text(query))
            if not result.returns_rows:
                raise ValidationError("Query did not return any rows")
            rows = result.mappings().fetchmany(limit)
            return [{k: _jsonable(v) for k, v in row.items()} for row in rows]
    except OperationalError as e:
        # 连接失败与 SQL 语法错误在部分驱动里都是 OperationalError，以连接为主
        raise NetworkError(f"Database error: {e.orig}")
    except DBAPIError as e:
        raise ValidationError(f"Query failed: {e.orig}")
    except SQLAlchemyError as e:
        raise ValidationError(f"Query failed: {e}")
    finally:
        engine.dispose()


class DatabaseAdapter(SourceAdapter):
    source_type = SourceType.DATABASE
    config_model = DatabaseConfig

    async def _rows(self, config: DatabaseConfig) -> list[dict[str, Any]]:
        config.require("connection_url", "query")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(run_query, config.connection_url, config.query, config.row_limit),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise NetworkError(f"Database query timed out after {self.timeout:g}s")

    async def _test(self, config: DatabaseConfig) -> SourceTestResult:
        rows = await self._rows(config)
        sample = rows[:SAMPLE_ROWS]
        return SourceTestResult(
            success=True,
            response=sample,
            fields=discover_fields(sample),
            structure=structure_of(sample),
        )

    async def _fetch(self, config: DatabaseConfig) -> FetchResult:
        rows = await self._rows(config)
        result = flatten(rows, config.selected_fields, config.field_display_names)
        return FetchResult(
            data=result.rows,
            fields=result.fields,
            field_display_names=result.field_display_names,
        )
