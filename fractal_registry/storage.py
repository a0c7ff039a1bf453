"""Durable key-value substrate for the registry tables.

The registry sees storage as a set of namespaced string -> string maps with
one extra guarantee: everything done inside ``atomic()`` commits together or
not at all. Registry calls run one at a time (a re-entrant lock serializes
them), which gives the run-to-completion model the registry relies on.

Backends
--------
MemoryKeyValueStore
    Process-local dict. ``atomic()`` records the prior value of every key it
    writes and puts them back on error. Used for tests and ephemeral
    deployments.

SQLiteKeyValueStore
    Single ``kv(ns, k, v)`` table in WAL mode. ``atomic()`` is one
    ``BEGIN IMMEDIATE`` transaction. Every connection goes through a
    DbCircuitBreaker so a degraded database trips LOCKDOWN (fail closed).
"""

from __future__ import annotations

import abc
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .lockdown import DbCircuitBreaker

logger = logging.getLogger("fractal_registry.storage")

MEMORY_DB_PATHS = ("", ":memory:")


class KeyValueStore(abc.ABC):
    """Namespaced key-value store with atomic units of work."""

    @abc.abstractmethod
    def get(self, ns: str, key: str) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def put(self, ns: str, key: str, value: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def remove(self, ns: str, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def scan(self, ns: str) -> List[Tuple[str, str]]:
        """All (key, value) pairs of a namespace, ordered by key."""
        raise NotImplementedError

    @abc.abstractmethod
    def atomic(self):
        """Context manager: commit all effects on success, discard on error."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_view(self):
        """Context manager: a consistent read-only view for several reads."""
        raise NotImplementedError

    def contains(self, ns: str, key: str) -> bool:
        return self.get(ns, key) is not None

    def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: Dict[Tuple[str, str], str] = {}
        # (ns, key) -> prior value (None: absent), in write order; set only inside a unit
        self._undo: Optional[List[Tuple[Tuple[str, str], Optional[str]]]] = None

    def get(self, ns: str, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get((ns, key))

    def _remember(self, slot: Tuple[str, str]) -> None:
        self._undo.append((slot, self._data.get(slot)))

    def put(self, ns: str, key: str, value: str) -> None:
        with self.atomic():
            self._remember((ns, key))
            self._data[(ns, key)] = value

    def remove(self, ns: str, key: str) -> None:
        with self.atomic():
            self._remember((ns, key))
            self._data.pop((ns, key), None)

    def scan(self, ns: str) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted((k, v) for (n, k), v in self._data.items() if n == ns)

    @contextmanager
    def atomic(self) -> Iterator["MemoryKeyValueStore"]:
        with self._lock:
            if self._undo is not None:
                # Nested units join the outer one.
                yield self
                return
            self._undo = []
            try:
                yield self
            except BaseException:
                for slot, prior in reversed(self._undo):
                    if prior is None:
                        self._data.pop(slot, None)
                    else:
                        self._data[slot] = prior
                raise
            finally:
                self._undo = None

    @contextmanager
    def read_view(self) -> Iterator["MemoryKeyValueStore"]:
        with self._lock:
            yield self


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed store.

    Storage Properties:
    - WAL mode with synchronous=FULL
    - one transaction per atomic unit (BEGIN IMMEDIATE takes the write lock
      up front, so two processes never interleave a unit)
    """

    def __init__(self, db_path: str = "fractal_registry.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection wrapper with circuit breaker (fail-closed)."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
        except sqlite3.Error:
            self.circuit.record_failure()
            raise
        try:
            yield conn
        except sqlite3.Error as e:
            logger.warning("sqlite operation failed on %s: %s", self.db_path, e)
            self.circuit.record_failure()
            raise
        else:
            self.circuit.record_success((time.monotonic() - start) * 1000.0)
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                ns TEXT NOT NULL,
                k TEXT NOT NULL,
                v TEXT NOT NULL,
                PRIMARY KEY (ns, k)
            )
            """)

    @contextmanager
    def atomic(self) -> Iterator["SQLiteKeyValueStore"]:
        with self._lock:
            if self._conn is not None:
                yield self
                return
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                self._conn = conn
                try:
                    yield self
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")
                finally:
                    self._conn = None

    @contextmanager
    def read_view(self) -> Iterator["SQLiteKeyValueStore"]:
        with self._lock:
            if self._conn is not None:
                yield self
                return
            with self._connect() as conn:
                # Deferred transaction: all reads see one snapshot.
                conn.execute("BEGIN")
                self._conn = conn
                try:
                    yield self
                finally:
                    self._conn = None
                    conn.execute("ROLLBACK")

    def _query(self, sql: str, params: tuple) -> List[tuple]:
        with self._lock:
            if self._conn is not None:
                return self._conn.execute(sql, params).fetchall()
            with self._connect() as conn:
                return conn.execute(sql, params).fetchall()

    def get(self, ns: str, key: str) -> Optional[str]:
        rows = self._query("SELECT v FROM kv WHERE ns = ? AND k = ?", (ns, key))
        return rows[0][0] if rows else None

    def put(self, ns: str, key: str, value: str) -> None:
        with self.atomic():
            self._conn.execute(
                "INSERT INTO kv (ns, k, v) VALUES (?, ?, ?) "
                "ON CONFLICT(ns, k) DO UPDATE SET v = excluded.v",
                (ns, key, value),
            )

    def remove(self, ns: str, key: str) -> None:
        with self.atomic():
            self._conn.execute("DELETE FROM kv WHERE ns = ? AND k = ?", (ns, key))

    def scan(self, ns: str) -> List[Tuple[str, str]]:
        rows = self._query("SELECT k, v FROM kv WHERE ns = ? ORDER BY k", (ns,))
        return [(str(k), str(v)) for k, v in rows]


def open_store(db_path: str, circuit: Optional[DbCircuitBreaker] = None) -> KeyValueStore:
    """Open the backend selected by a path (``:memory:`` selects the dict backend)."""
    if db_path in MEMORY_DB_PATHS:
        return MemoryKeyValueStore()
    return SQLiteKeyValueStore(db_path, circuit=circuit)
