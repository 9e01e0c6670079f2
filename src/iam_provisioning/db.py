"""iam_provisioning.db

Thin psycopg wrapper shared by the PostgreSQL identity store and job
repository.  One lazily opened autocommit connection per Database, guarded by
a lock; every statement is bounded by statement_timeout.

psycopg errors are mapped onto the engine's store errors:
  IntegrityError / DataError        -> StoreConflictError
  QueryCanceled / OperationalError  -> StoreUnavailableError
"""

from __future__ import annotations

import threading
from typing import Any

import psycopg

from iam_provisioning.shared import StoreConflictError, StoreUnavailableError


class Database:
    def __init__(
        self,
        db_dsn: str,
        timeout_seconds: float = 10.0,
        conn: psycopg.Connection | None = None,
    ) -> None:
        self._dsn = db_dsn
        self._timeout_ms = int(timeout_seconds * 1000)
        self._conn = conn
        self._lock = threading.Lock()

    def _connection(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed or self._conn.broken:
            self._conn = psycopg.connect(
                self._dsn,
                autocommit=True,
                connect_timeout=max(1, self._timeout_ms // 1000),
                options=f"-c statement_timeout={self._timeout_ms}",
            )
        return self._conn

    def execute(self, query: Any, params: tuple | list = ()) -> psycopg.Cursor:
        try:
            with self._lock:
                return self._connection().execute(query, params)
        except (psycopg.IntegrityError, psycopg.DataError) as exc:
            raise StoreConflictError(str(exc)) from exc
        except (psycopg.errors.QueryCanceled, psycopg.OperationalError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
