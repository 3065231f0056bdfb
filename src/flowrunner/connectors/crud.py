"""CRUD connector: one SQLite database file per database name under the CRUD data dir."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..automation.errors import ActionError
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SQL_OPERATORS = {
    "==": "= ?",
    "!=": "!= ?",
    ">": "> ?",
    "<": "< ?",
    ">=": ">= ?",
    "<=": "<= ?",
    "contains": "LIKE '%' || ? || '%'",
    "exists": "IS NOT NULL",
}


def _ident(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ActionError(f"Invalid identifier: {name!r}", "invalid_config")
    return f'"{name}"'


def _sql_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _where(conditions: list[dict]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for cond in conditions:
        operator = cond.get("operator", "==")
        sql = _SQL_OPERATORS.get(operator)
        if sql is None:
            raise ActionError(f"Unsupported condition operator: {operator}", "invalid_config")
        clauses.append(f"{_ident(cond['field'])} {sql}")
        if operator != "exists":
            params.append(_sql_value(cond.get("value")))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


@register
class CrudConnector(BaseConnector):
    """Serves ``crud_operation`` operations against local SQLite databases.

    Tables are created on first ``create`` with an integer ``id`` key; columns
    missing from an existing table are added as they appear in ``data``.
    """

    kind = "crud"

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.crud_data_dir)

    async def execute(
        self,
        database: str,
        table: str,
        operation: str,
        conditions: list[dict] | None = None,
        columns: list[str] | None = None,
        data: dict | None = None,
    ) -> list[dict]:
        rows = await asyncio.to_thread(
            self._execute_sync, database, table, operation, conditions or [], columns or [], data or {}
        )
        logger.debug("CRUD %s on %s.%s affected %d rows", operation, database, table, len(rows))
        return rows

    def _connect(self, database: str) -> sqlite3.Connection:
        if not _IDENTIFIER.match(database or ""):
            raise ActionError(f"Invalid database name: {database!r}", "invalid_config")
        path = Path(self.settings.crud_data_dir) / f"{database}.db"
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        return conn

    def _execute_sync(
        self,
        database: str,
        table: str,
        operation: str,
        conditions: list[dict],
        columns: list[str],
        data: dict,
    ) -> list[dict]:
        conn = self._connect(database)
        try:
            with conn:
                if operation == "create":
                    self._ensure_table(conn, table, data)
                    return self._create(conn, table, columns, data)
                if not self._table_exists(conn, table):
                    raise ActionError(f"Table {database}.{table} does not exist", "not_found")
                if operation == "read":
                    return self._select(conn, table, columns, conditions)
                if operation == "update":
                    self._ensure_table(conn, table, data)
                    return self._update(conn, table, columns, conditions, data)
                if operation == "delete":
                    return self._delete(conn, table, conditions)
                raise ActionError(f"Unknown CRUD operation: {operation}", "invalid_operation")
        except sqlite3.Error as e:
            raise ActionError(f"CRUD {operation} on {database}.{table} failed: {e}", "database_error") from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    @staticmethod
    def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    def _ensure_table(self, conn: sqlite3.Connection, table: str, data: dict) -> None:
        name = _ident(table)
        if not self._table_exists(conn, table):
            conn.execute(f"CREATE TABLE {name} (id INTEGER PRIMARY KEY AUTOINCREMENT)")
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({name})")}
        for column in data:
            if column not in existing:
                conn.execute(f"ALTER TABLE {name} ADD COLUMN {_ident(column)}")

    @staticmethod
    def _projection(columns: list[str]) -> str:
        return ", ".join(_ident(c) for c in columns) if columns else "*"

    def _create(self, conn: sqlite3.Connection, table: str, columns: list[str], data: dict) -> list[dict]:
        name = _ident(table)
        if data:
            cols = ", ".join(_ident(c) for c in data)
            marks = ", ".join("?" for _ in data)
            cursor = conn.execute(
                f"INSERT INTO {name} ({cols}) VALUES ({marks})",
                [_sql_value(v) for v in data.values()],
            )
        else:
            cursor = conn.execute(f"INSERT INTO {name} DEFAULT VALUES")
        row = conn.execute(
            f"SELECT {self._projection(columns)} FROM {name} WHERE rowid = ?", (cursor.lastrowid,)
        ).fetchone()
        return [dict(row)]

    def _select(
        self, conn: sqlite3.Connection, table: str, columns: list[str], conditions: list[dict]
    ) -> list[dict]:
        where, params = _where(conditions)
        rows = conn.execute(
            f"SELECT {self._projection(columns)} FROM {_ident(table)}{where}", params
        ).fetchall()
        return [dict(r) for r in rows]

    def _update(
        self,
        conn: sqlite3.Connection,
        table: str,
        columns: list[str],
        conditions: list[dict],
        data: dict,
    ) -> list[dict]:
        name = _ident(table)
        where, params = _where(conditions)
        ids = [r["_rowid"] for r in conn.execute(f"SELECT rowid AS _rowid FROM {name}{where}", params)]
        if not ids or not data:
            return self._by_rowid(conn, name, columns, ids)
        assignments = ", ".join(f"{_ident(c)} = ?" for c in data)
        marks = ", ".join("?" for _ in ids)
        conn.execute(
            f"UPDATE {name} SET {assignments} WHERE rowid IN ({marks})",
            [_sql_value(v) for v in data.values()] + ids,
        )
        return self._by_rowid(conn, name, columns, ids)

    def _delete(self, conn: sqlite3.Connection, table: str, conditions: list[dict]) -> list[dict]:
        name = _ident(table)
        where, params = _where(conditions)
        removed = [dict(r) for r in conn.execute(f"SELECT * FROM {name}{where}", params)]
        conn.execute(f"DELETE FROM {name}{where}", params)
        return removed

    def _by_rowid(
        self, conn: sqlite3.Connection, name: str, columns: list[str], ids: list[int]
    ) -> list[dict]:
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT {self._projection(columns)} FROM {name} WHERE rowid IN ({marks})", ids
        ).fetchall()
        return [dict(r) for r in rows]
