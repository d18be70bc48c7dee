from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations

_MIGRATION_LOCK = threading.Lock()


class DBConn:
    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self.path = path
        self._depth = 0
        self._lock = threading.RLock()

    def execute(self, sql: str, params: tuple | list | None = None):
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._depth = 0

    def commit(self) -> None:
        if self._conn.in_transaction and not self._depth:
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=5.0)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    with _MIGRATION_LOCK:
        apply_migrations(raw)
    return DBConn(raw, path)
