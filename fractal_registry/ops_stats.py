"""Operational statistics for the registry server.

Lightweight in-memory counters behind /v1/stats.

Notes
-----
- Counters reset on process restart.
- These are not a record of grants. The registry tables are.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    inserts_total: int = 0
    deletes_total: int = 0
    queries_total: int = 0
    queries_by_endpoint: Dict[str, int] = field(default_factory=dict)
    errors_total: int = 0
    errors_by_code: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_insert(self) -> None:
        with self._lock:
            self._c.inserts_total += 1

    def record_delete(self) -> None:
        with self._lock:
            self._c.deletes_total += 1

    def record_query(self, endpoint: str) -> None:
        with self._lock:
            self._c.queries_total += 1
            self._inc_map(self._c.queries_by_endpoint, endpoint or "unknown")

    def record_error(self, code: str) -> None:
        with self._lock:
            self._c.errors_total += 1
            self._inc_map(self._c.errors_by_code, code or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "inserts_total": c.inserts_total,
                "deletes_total": c.deletes_total,
                "queries_total": c.queries_total,
                "queries_by_endpoint": dict(c.queries_by_endpoint),
                "errors_total": c.errors_total,
                "errors_by_code": dict(c.errors_by_code),
            }
        if extra:
            snap.update(extra)
        return snap
