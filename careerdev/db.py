from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any

from careerdev.config import logger
from careerdev.subscriptions import USAGE_COUNTERS
from careerdev.utils import now_utc_iso, safe_text

try:
    import psycopg2  # type: ignore
    from psycopg2.extras import RealDictCursor  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    psycopg2 = None
    RealDictCursor = None

DB_INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)
if psycopg2 is not None:
    DB_INTEGRITY_ERRORS = DB_INTEGRITY_ERRORS + (psycopg2.IntegrityError,)


def adapt_query_for_backend(backend: str, query: str, params: Any = None) -> tuple[str, Any]:
    if backend != "postgres" or params is None:
        return query, params
    converted_query = query.replace("?", "%s")
    if isinstance(params, list):
        return converted_query, tuple(params)
    return converted_query, params


class DBCursor:
    def __init__(self, raw_cursor: Any, backend: str):
        self._raw_cursor = raw_cursor
        self._backend = backend

    def execute(self, query: str, params: Any = None) -> "DBCursor":
        converted_query, converted_params = adapt_query_for_backend(self._backend, query, params)
        if converted_params is None:
            self._raw_cursor.execute(converted_query)
        else:
            self._raw_cursor.execute(converted_query, converted_params)
        return self

    def fetchone(self) -> Any:
        return self._raw_cursor.fetchone()

    def fetchall(self) -> list[Any]:
        return self._raw_cursor.fetchall()

    def close(self) -> None:
        self._raw_cursor.close()

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))


class DBConnection:
    def __init__(self, raw_connection: Any, backend: str):
        self._raw_connection = raw_connection
        self.backend = backend

    def cursor(self) -> DBCursor:
        if self.backend == "postgres":
            if RealDictCursor is None:
                raise RuntimeError("RealDictCursor unavailable while DATABASE_URL is configured.")
            return DBCursor(self._raw_connection.cursor(cursor_factory=RealDictCursor), self.backend)
        return DBCursor(self._raw_connection.cursor(), self.backend)

    def execute(self, query: str, params: Any = None) -> DBCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor

    def commit(self) -> None:
        self._raw_connection.commit()

    def rollback(self) -> None:
        self._raw_connection.rollback()

    def close(self) -> None:
        self._raw_connection.close()

    def __enter__(self) -> "DBConnection":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


class Database:
    """Connection factory for the SQLite file or the Postgres URL.

    All writes go through ``lock`` so that SQLite never sees two writers
    from this process at once.
    """

    def __init__(self, backend: str = "sqlite", database_url: str = "", db_path: str = ""):
        if backend not in {"sqlite", "postgres"}:
            raise ValueError(f"Unsupported database backend: {backend}")
        self.backend = backend
        self.database_url = database_url
        self.db_path = db_path
        self.lock = threading.Lock()

    def connect(self) -> DBConnection:
        if self.backend == "postgres":
            if psycopg2 is None:
                raise RuntimeError("DATABASE_URL is configured but psycopg2 is not installed.")
            raw_connection = psycopg2.connect(self.database_url, connect_timeout=10)
            return DBConnection(raw_connection, self.backend)
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        raw_connection = sqlite3.connect(self.db_path, timeout=15, check_same_thread=False)
        raw_connection.row_factory = sqlite3.Row
        return DBConnection(raw_connection, self.backend)

    def begin_write_transaction(self, cursor: DBCursor) -> None:
        if self.backend == "postgres":
            cursor.execute("BEGIN")
            return
        cursor.execute("BEGIN IMMEDIATE")

    def init_schema(self) -> None:
        id_column = "BIGSERIAL PRIMARY KEY" if self.backend == "postgres" else "INTEGER PRIMARY KEY AUTOINCREMENT"
        usage_columns = ",\n".join(f"usage_{name} INTEGER NOT NULL DEFAULT 0" for name in USAGE_COUNTERS)
        with self.lock:
            connection = self.connect()
            try:
                cursor = connection.cursor()
                cursor.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS subscriptions (
                        user_id TEXT PRIMARY KEY,
                        tier TEXT NOT NULL DEFAULT 'free',
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        auto_renew INTEGER NOT NULL DEFAULT 0,
                        {usage_columns},
                        last_reset TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                cursor.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS payment_orders (
                        id {id_column},
                        transaction_id TEXT NOT NULL UNIQUE,
                        gateway TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        tier TEXT NOT NULL,
                        amount TEXT NOT NULL,
                        currency TEXT NOT NULL,
                        status TEXT NOT NULL,
                        gateway_payment_id TEXT,
                        reason TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                cursor.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS analytics_events (
                        id {id_column},
                        user_id TEXT,
                        event_type TEXT NOT NULL,
                        event_name TEXT NOT NULL,
                        meta_json TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_payment_orders_user_time ON payment_orders (user_id, created_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_payment_orders_status ON payment_orders (status, created_at)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_user_time ON analytics_events (user_id, created_at)")
                connection.commit()
            finally:
                connection.close()

    def log_analytics_event(
        self,
        event_type: str,
        event_name: str,
        user_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        with self.lock:
            connection = self.connect()
            try:
                connection.execute(
                    """
                    INSERT INTO analytics_events (user_id, event_type, event_name, meta_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        safe_text(event_type) or "system",
                        safe_text(event_name) or "event",
                        json.dumps(meta or {}, separators=(",", ":"), sort_keys=True),
                        now_utc_iso(),
                    ),
                )
                connection.commit()
            except Exception:
                logger.exception("Failed to record analytics event %s.%s", event_type, event_name)
                connection.rollback()
            finally:
                connection.close()
