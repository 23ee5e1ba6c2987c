from __future__ import annotations

import json
import re
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from compliance.db.postgres import PostgresTxRunner

_COLUMNS = (
    "result_id",
    "entity_type",
    "entity_id",
    "analysis_date",
    "status",
    "request_data",
    "response_data",
    "analysis_result",
    "non_compliances",
    "error_code",
    "error_message",
    "attempt_count",
    "created_at",
    "updated_at",
)
_JSON_COLUMNS = {"request_data", "response_data", "analysis_result", "non_compliances"}
_MUTABLE_COLUMNS = (
    "status",
    "response_data",
    "analysis_result",
    "non_compliances",
    "error_code",
    "error_message",
    "attempt_count",
    "updated_at",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return None


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row_to_record(row: Any) -> dict[str, Any]:
    record = {name: row[idx] for idx, name in enumerate(_COLUMNS)}
    for name in _JSON_COLUMNS:
        record[name] = _load_json(record[name])
    record["entity_id"] = int(record["entity_id"])
    record["attempt_count"] = int(record["attempt_count"] or 0)
    for name in ("analysis_date", "created_at", "updated_at"):
        record[name] = _iso(record[name])
    return record


class InMemoryAnalysisResultsRepository:
    def __init__(self, rows: dict[str, dict[str, Any]] | None = None) -> None:
        self._rows = rows if rows is not None else {}
        self._order: dict[str, int] = {}

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        result_id = str(record["result_id"])
        self._rows[result_id] = dict(record)
        self._order[result_id] = len(self._order)
        return dict(record)

    def update(self, *, record: dict[str, Any], expected_status: str | None = None) -> dict[str, Any] | None:
        result_id = str(record["result_id"])
        if result_id not in self._rows:
            raise KeyError(result_id)
        if expected_status is not None and self._rows[result_id]["status"] != expected_status:
            return None
        self._rows[result_id] = dict(record)
        return dict(record)

    def get(self, *, result_id: str) -> dict[str, Any] | None:
        row = self._rows.get(result_id)
        return dict(row) if row is not None else None

    def find_pending(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        for row in self._rows.values():
            if row["entity_type"] == entity_type and row["entity_id"] == entity_id and row["status"] == "Pending":
                return dict(row)
        return None

    def latest_for_entity(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        rows = [
            row
            for row in self._rows.values()
            if row["entity_type"] == entity_type and row["entity_id"] == entity_id
        ]
        if not rows:
            return None
        latest = max(rows, key=lambda row: (row["analysis_date"], self._order.get(row["result_id"], 0)))
        return dict(latest)

    def list_by_status(self, *, status: str) -> list[dict[str, Any]]:
        rows = [row for row in self._rows.values() if row["status"] == status]
        rows.sort(key=lambda row: (row["created_at"], self._order.get(row["result_id"], 0)))
        return [dict(row) for row in rows]

    def reset(self) -> None:
        self._rows.clear()
        self._order.clear()


class SqliteAnalysisResultsRepository:
    """Analysis results persisted to a local SQLite file."""

    def __init__(self, db_path: str | Path, *, table_name: str = "analysis_results") -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=10.0)

    def ensure_schema(self) -> None:
        table = self._table_name
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    result_id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id INTEGER NOT NULL,
                    analysis_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    request_data TEXT,
                    response_data TEXT,
                    analysis_result TEXT,
                    non_compliances TEXT,
                    error_code TEXT,
                    error_message TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_entity_date
                ON {table}(entity_type, entity_id, analysis_date)
                """
            )
            conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_entity_pending
                ON {table}(entity_type, entity_id) WHERE status = 'Pending'
                """
            )
            conn.commit()

    @staticmethod
    def _params(record: dict[str, Any], columns: tuple[str, ...]) -> list[Any]:
        values: list[Any] = []
        for name in columns:
            value = record.get(name)
            values.append(_dump_json(value) if name in _JSON_COLUMNS else value)
        return values

    def _select(self, where: str, params: tuple[Any, ...], *, order_by: str = "", limit: int | None = None):
        sql = f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        with self._lock, self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        with self._lock, self._connect() as conn:
            conn.execute(sql, self._params(record, _COLUMNS))
            conn.commit()
        return dict(record)

    def update(self, *, record: dict[str, Any], expected_status: str | None = None) -> dict[str, Any] | None:
        """Write the mutable columns; with ``expected_status`` only while the row still has it."""
        assignments = ", ".join(f"{name} = ?" for name in _MUTABLE_COLUMNS)
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE result_id = ?"
        params = [*self._params(record, _MUTABLE_COLUMNS), record["result_id"]]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)
        with self._lock, self._connect() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
        if cursor.rowcount == 0:
            if expected_status is not None and self.get(result_id=str(record["result_id"])) is not None:
                return None
            raise KeyError(record["result_id"])
        return dict(record)

    def get(self, *, result_id: str) -> dict[str, Any] | None:
        rows = self._select("result_id = ?", (result_id,), limit=1)
        return _row_to_record(rows[0]) if rows else None

    def find_pending(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        rows = self._select(
            "entity_type = ? AND entity_id = ? AND status = 'Pending'",
            (entity_type, int(entity_id)),
            limit=1,
        )
        return _row_to_record(rows[0]) if rows else None

    def latest_for_entity(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        rows = self._select(
            "entity_type = ? AND entity_id = ?",
            (entity_type, int(entity_id)),
            order_by="analysis_date DESC, rowid DESC",
            limit=1,
        )
        return _row_to_record(rows[0]) if rows else None

    def list_by_status(self, *, status: str) -> list[dict[str, Any]]:
        rows = self._select("status = ?", (status,), order_by="created_at ASC, rowid ASC")
        return [_row_to_record(row) for row in rows]

    def reset(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table_name}")
            conn.commit()


class PostgresAnalysisResultsRepository:
    """Analysis results repository for the postgres backend; JSON columns are jsonb."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "analysis_results") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        table = self._table_name
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                result_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id BIGINT NOT NULL,
                analysis_date TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('Pending', 'Completed', 'Failed')),
                request_data JSONB,
                response_data JSONB,
                analysis_result JSONB,
                non_compliances JSONB,
                error_code TEXT,
                error_message TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{table}_entity_date ON {table}(entity_type, entity_id, analysis_date)",
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_entity_pending
            ON {table}(entity_type, entity_id) WHERE status = 'Pending'
            """,
        ]

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def _fetch(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        def _op(conn: Any) -> list[Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return list(cur.fetchall())

        return self._tx_runner.run_in_tx(fn=_op)

    def _select_sql(self, where: str) -> str:
        return f"SELECT {', '.join(_COLUMNS)} FROM {self._table_name} WHERE {where}"

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join("%s::jsonb" if name in _JSON_COLUMNS else "%s" for name in _COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        params = tuple(
            _dump_json(record.get(name)) if name in _JSON_COLUMNS else record.get(name) for name in _COLUMNS
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return dict(record)

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, record: dict[str, Any], expected_status: str | None = None) -> dict[str, Any] | None:
        assignments = ", ".join(
            f"{name} = %s::jsonb" if name in _JSON_COLUMNS else f"{name} = %s" for name in _MUTABLE_COLUMNS
        )
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE result_id = %s"
        params: tuple[Any, ...] = (
            *(
                _dump_json(record.get(name)) if name in _JSON_COLUMNS else record.get(name)
                for name in _MUTABLE_COLUMNS
            ),
            record["result_id"],
        )
        if expected_status is not None:
            sql += " AND status = %s"
            params = (*params, expected_status)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                if cur.rowcount == 0:
                    if expected_status is not None:
                        cur.execute(f"SELECT 1 FROM {self._table_name} WHERE result_id = %s", (record["result_id"],))
                        if cur.fetchone() is not None:
                            return None
                    raise KeyError(record["result_id"])
            return dict(record)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, result_id: str) -> dict[str, Any] | None:
        rows = self._fetch(self._select_sql("result_id = %s") + " LIMIT 1", (result_id,))
        return _row_to_record(rows[0]) if rows else None

    def find_pending(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        rows = self._fetch(
            self._select_sql("entity_type = %s AND entity_id = %s AND status = 'Pending'") + " LIMIT 1",
            (entity_type, int(entity_id)),
        )
        return _row_to_record(rows[0]) if rows else None

    def latest_for_entity(self, *, entity_type: str, entity_id: int) -> dict[str, Any] | None:
        rows = self._fetch(
            self._select_sql("entity_type = %s AND entity_id = %s")
            + " ORDER BY analysis_date DESC, created_at DESC LIMIT 1",
            (entity_type, int(entity_id)),
        )
        return _row_to_record(rows[0]) if rows else None

    def list_by_status(self, *, status: str) -> list[dict[str, Any]]:
        rows = self._fetch(self._select_sql("status = %s") + " ORDER BY created_at ASC", (status,))
        return [_row_to_record(row) for row in rows]

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._table_name}")

        self._tx_runner.run_in_tx(fn=_op)
