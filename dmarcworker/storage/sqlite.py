# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Optional

from dmarcworker.log import logger
from dmarcworker.storage.queue_storage import QueueStorage, StorageError


class SQLiteQueueStorage(QueueStorage):
    """
    Durable queue storage in a SQLite database file

    One connection is opened per instance and reused for its lifetime.
    Values are stored as JSON text. Outside of ``transaction()`` every
    statement is committed before the call returns; inside it, statements
    are committed together when the block exits.

    ``transaction()`` takes SQLite's write lock with ``BEGIN IMMEDIATE``, so
    instances in other threads or processes that open the same file wait
    for it, up to ``timeout`` seconds.
    """

    def __init__(
        self, path: str, namespace: str = "default", timeout: float = 300.0
    ):
        """
        Args:
            path (str): Path to the SQLite database file
            namespace (str): Separates the jobs and timer of independent
                queues sharing one database file
            timeout (float): Seconds to wait for another connection's
                write lock before failing
        """
        self.path = path
        self.namespace = namespace
        self.timeout = timeout
        self._lock = threading.RLock()
        self._transaction_depth = 0
        try:
            self._conn = sqlite3.connect(
                path, timeout=timeout, isolation_level=None, check_same_thread=False
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_entries (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_timers (
                    namespace TEXT PRIMARY KEY,
                    scheduled_at INTEGER NOT NULL
                )
                """
            )
        except sqlite3.Error as e:
            raise StorageError(
                "Unable to open queue database {0}: {1}".format(path, e)
            ) from e
        logger.debug("Opened queue database {0}".format(path))

    def _execute(self, sql: str, parameters: tuple = ()) -> list[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, parameters).fetchall()
            except sqlite3.Error as e:
                raise StorageError("Queue database error: {0}".format(e)) from e

    def _rollback(self):
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("Queue rollback failed: {0}".format(e))

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._transaction_depth > 0:
                self._transaction_depth += 1
                try:
                    yield
                finally:
                    self._transaction_depth -= 1
                return

            self._execute("BEGIN IMMEDIATE")
            self._transaction_depth = 1
            try:
                yield
            except BaseException:
                self._transaction_depth = 0
                self._rollback()
                raise
            self._transaction_depth = 0
            try:
                self._execute("COMMIT")
            except StorageError:
                self._rollback()
                raise

    def get(self, key: str) -> Optional[Any]:
        rows = self._execute(
            "SELECT value FROM queue_entries WHERE namespace = ? AND key = ?",
            (self.namespace, key),
        )
        if len(rows) == 0:
            return None
        return json.loads(rows[0][0])

    def put(self, key: str, value: Any):
        self._execute(
            """
            INSERT INTO queue_entries (namespace, key, value) VALUES (?, ?, ?)
            ON CONFLICT (namespace, key) DO UPDATE SET value = excluded.value
            """,
            (self.namespace, key, json.dumps(value)),
        )

    def delete(self, key: str):
        self._execute(
            "DELETE FROM queue_entries WHERE namespace = ? AND key = ?",
            (self.namespace, key),
        )

    def list(self, prefix: str) -> list[tuple[str, Any]]:
        rows = self._execute(
            """
            SELECT key, value FROM queue_entries
            WHERE namespace = ? AND substr(key, 1, length(?)) = ?
            ORDER BY key
            """,
            (self.namespace, prefix, prefix),
        )
        return [(key, json.loads(value)) for key, value in rows]

    def get_timer(self) -> Optional[int]:
        rows = self._execute(
            "SELECT scheduled_at FROM queue_timers WHERE namespace = ?",
            (self.namespace,),
        )
        if len(rows) == 0:
            return None
        return rows[0][0]

    def set_timer(self, scheduled_at: Optional[int]):
        if scheduled_at is None:
            self._execute(
                "DELETE FROM queue_timers WHERE namespace = ?", (self.namespace,)
            )
            return
        self._execute(
            """
            INSERT INTO queue_timers (namespace, scheduled_at) VALUES (?, ?)
            ON CONFLICT (namespace) DO UPDATE
            SET scheduled_at = excluded.scheduled_at
            """,
            (self.namespace, int(scheduled_at)),
        )

    def close(self):
        with self._lock:
            self._conn.close()
