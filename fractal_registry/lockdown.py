"""Circuit breaker for the SQLite substrate.

Grants and their indices are only consistent if every write of a call commits
together. When the database becomes slow, locked or unavailable the registry
stops serving instead of risking half-applied calls or stale reads.

Storage errors and slow operations count as strikes. Reaching the strike
threshold (or a single operation slower than the latency threshold) opens a
LOCKDOWN window; while it is open every store operation raises
FR_E_STORAGE_LOCKDOWN with the seconds left until it closes.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import FR_E_STORAGE_LOCKDOWN, registry_error

_T = TypeVar("_T")


def _env(name: str, default: _T, cast: Callable[[str], _T]) -> _T:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        return default


@dataclass
class CircuitBreakerConfig:
    """Thresholds for DbCircuitBreaker.

    Env:
    - FRACTAL_DB_LATENCY_THRESHOLD_MS: one op slower than this opens lockdown.
    - FRACTAL_DB_FAILURE_THRESHOLD: strikes needed to open lockdown.
    - FRACTAL_DB_LOCKDOWN_SECONDS: how long lockdown stays open.
    - FRACTAL_DB_CONNECT_TIMEOUT_SECONDS: sqlite busy/connect timeout.
    """

    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env("FRACTAL_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        strikes = _env("FRACTAL_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        window = _env("FRACTAL_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _env("FRACTAL_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)

        return cls(
            latency_threshold_ms=cls.latency_threshold_ms if latency < 0 else latency,
            failure_threshold=max(1, strikes),
            lockdown_seconds=max(1, window),
            connect_timeout_seconds=max(0.01, timeout),
        )


class DbCircuitBreaker:
    """Strike counter plus a lockdown deadline on the monotonic clock."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._strikes = 0
        self._open_until = 0.0

    @property
    def failure_count(self) -> int:
        return self._strikes

    def remaining_seconds(self) -> float:
        return max(0.0, self._open_until - time.monotonic())

    def is_lockdown_active(self) -> bool:
        return self.remaining_seconds() > 0.0

    def raise_if_lockdown(self) -> None:
        remaining = self.remaining_seconds()
        if remaining > 0.0:
            raise registry_error(
                FR_E_STORAGE_LOCKDOWN,
                "LOCKDOWN_ACTIVE",
                retryable=True,
                http_status=503,
                retry_after_seconds=int(remaining) + 1,
            )

    def _open(self) -> None:
        self._strikes = self.config.failure_threshold
        self._open_until = time.monotonic() + float(self.config.lockdown_seconds)

    def record_success(self, elapsed_ms: float = 0.0) -> None:
        if elapsed_ms >= self.config.latency_threshold_ms:
            self._open()
        elif self._strikes:
            # One clean op forgives one strike.
            self._strikes -= 1

    def record_failure(self) -> None:
        self._strikes += 1
        if self._strikes >= self.config.failure_threshold:
            self._open()
