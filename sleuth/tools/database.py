from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from sleuth.core.cancel import CancelToken
from sleuth.core.models import ToolResult
from sleuth.tools.base import BaseTool, SafetyLevel, ToolCategory
from sleuth.tools.output_limiter import truncate

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

# table -> {primary_key, columns, relations (described to the model, not joined)}
TABLE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "builds": {
        "primary_key": "uuid",
        "columns": ["uuid", "status", "status_message", "namespace", "sha", "pull_request_id", "environment_id",
                    "created_at", "updated_at"],
        "relations": {"pull_request_id": "pull_requests.id", "environment_id": "environments.id"},
    },
    "deploys": {
        "primary_key": "uuid",
        "columns": ["uuid", "status", "status_message", "docker_image", "branch", "repo_name", "build_number",
                    "build_id", "deployable_id", "created_at", "updated_at"],
        "relations": {"build_id": "builds.id", "deployable_id": "deployables.id"},
    },
    "deployables": {
        "primary_key": "id",
        "columns": ["id", "name", "type", "repository_id", "default_branch_name", "created_at", "updated_at"],
        "relations": {"repository_id": "repositories.id"},
    },
    "pull_requests": {
        "primary_key": "id",
        "columns": ["id", "number", "title", "status", "branch_name", "full_name", "github_login", "repository_id",
                    "created_at", "updated_at"],
        "relations": {"repository_id": "repositories.id"},
    },
    "repositories": {
        "primary_key": "id",
        "columns": ["id", "name", "url", "github_repository_id", "created_at", "updated_at"],
        "relations": {},
    },
    "environments": {
        "primary_key": "id",
        "columns": ["id", "name", "config", "created_at", "updated_at"],
        "relations": {},
    },
}


def build_select(table: str, filters: Optional[Dict[str, Any]], limit: Optional[int]) -> tuple:
    """
    Compose a parameterized SELECT for an allow-listed table.

    Raises:
        ValueError: unknown table or filter column
    """
    schema = TABLE_SCHEMAS.get(table)
    if schema is None:
        raise ValueError(f"Table '{table}' not allowed. Allowed tables: {', '.join(TABLE_SCHEMAS)}")

    where: List[sql.Composable] = []
    params: List[Any] = []
    for column, value in (filters or {}).items():
        if column not in schema["columns"]:
            raise ValueError(f"Unknown column '{column}' for {table}. Columns: {', '.join(schema['columns'])}")
        if value is None:
            where.append(sql.SQL("{} IS NULL").format(sql.Identifier(column)))
        else:
            where.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            params.append(value)

    query = sql.SQL("SELECT {cols} FROM {table}").format(
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in schema["columns"]),
        table=sql.Identifier(table),
    )
    if where:
        query = query + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(where)
    query = query + sql.SQL(" ORDER BY {} DESC LIMIT %s").format(sql.Identifier("created_at"))
    params.append(max(1, min(int(limit or DEFAULT_LIMIT), MAX_LIMIT)))
    return query, params


class DatabaseClient:
    """Read-only access to the deployment database (psycopg, one short connection per query)."""

    def __init__(self, dsn: Optional[str], *, connect: Callable[..., Any] = psycopg.connect) -> None:
        self.dsn = dsn
        self._connect = connect

    @property
    def configured(self) -> bool:
        return bool(self.dsn)

    def query_table(self, table: str, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List:
        query, params = build_select(table, filters, limit)
        if not self.dsn:
            raise RuntimeError("Database is not configured (set DATABASE_URL)")
        with self._connect(self.dsn, row_factory=dict_row) as conn:
            conn.read_only = True
            with conn.cursor() as cur:
                cur.execute(query, params)
                return list(cur.fetchall())


class QueryDatabaseTool(BaseTool):
    name = "query_database"
    description = (
        "Read-only query of the deployment database for fresh build/deploy status. READ-ONLY. "
        "Tables: builds, deploys, deployables, pull_requests, repositories, environments. "
        "Filters are exact-match column values; results are newest first."
    )
    parameters = {
        "type": "object",
        "properties": {
            "table": {"type": "string", "enum": list(TABLE_SCHEMAS)},
            "filters": {
                "type": "object",
                "description": 'WHERE conditions as column/value pairs, e.g. {"uuid": "abc123", "status": "error"}',
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "description": f"Maximum records to return (default: {DEFAULT_LIMIT}, max: {MAX_LIMIT})",
            },
        },
        "required": ["table"],
    }
    safety_level = SafetyLevel.SAFE
    category = ToolCategory.DATABASE

    def __init__(self, client: DatabaseClient) -> None:
        self.client = client

    async def execute(self, args: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ToolResult:
        if cancel is not None and cancel.cancelled:
            return self.cancelled_result()
        table = str(args.get("table") or "")
        filters = args.get("filters") if isinstance(args.get("filters"), dict) else None
        try:
            records = await asyncio.to_thread(self.client.query_table, table, filters, args.get("limit"))
        except ValueError as e:
            return ToolResult.fail(str(e), "INVALID_QUERY")
        except Exception as e:
            logger.warning("database: query failed table=%s error=%s", table, type(e).__name__)
            return ToolResult.fail(str(e) or "Database query failed", "EXECUTION_ERROR")

        payload = {
            "success": True,
            "table": table,
            "count": len(records),
            "records": records,
            "schema": TABLE_SCHEMAS[table],
        }
        return ToolResult.ok(truncate(json.dumps(payload, default=str)), f"{len(records)} rows from {table}")
