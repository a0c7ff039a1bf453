"""Environment-driven configuration.

Env:
- FRACTAL_DB_PATH (default: fractal_registry.db; ``:memory:`` for no persistence)
- FRACTAL_ID_SCHEME (default: v1)
- FRACTAL_EVENT_LOG_PATH (optional JSONL file receiving EVENT_JSON lines)
- FRACTAL_ENV (dev/prod; prod requires a token for /v1/stats by default)
- FRACTAL_STATS_REQUIRE_AUTH, FRACTAL_STATS_TOKEN
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .events import EventSink, FileEventSink, LoggingEventSink, MultiEventSink
from .identity import ID_SCHEME_V1, check_scheme
from .lockdown import CircuitBreakerConfig, DbCircuitBreaker
from .registry import FractalRegistry
from .storage import open_store

DEFAULT_DB_PATH = "fractal_registry.db"

_TRUTHY = ("1", "true", "yes", "on")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


@dataclass(frozen=True)
class RegistryConfig:
    db_path: str = DEFAULT_DB_PATH
    id_scheme: str = ID_SCHEME_V1
    event_log_path: Optional[str] = None
    env: str = "dev"
    stats_require_auth: bool = False
    stats_token: str = ""

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        env = _env_str("FRACTAL_ENV", "dev").lower()
        raw_require = os.getenv("FRACTAL_STATS_REQUIRE_AUTH")
        if raw_require is None:
            stats_require_auth = env in ("prod", "production")
        else:
            stats_require_auth = raw_require.strip().lower() in _TRUTHY

        return cls(
            db_path=_env_str("FRACTAL_DB_PATH", DEFAULT_DB_PATH),
            id_scheme=check_scheme(_env_str("FRACTAL_ID_SCHEME", ID_SCHEME_V1) or ID_SCHEME_V1),
            event_log_path=_env_str("FRACTAL_EVENT_LOG_PATH") or None,
            env=env,
            stats_require_auth=stats_require_auth,
            stats_token=_env_str("FRACTAL_STATS_TOKEN"),
        )


def build_event_sink(config: RegistryConfig, extra: Optional[List[EventSink]] = None) -> EventSink:
    sinks: List[EventSink] = [LoggingEventSink()]
    if config.event_log_path:
        sinks.append(FileEventSink(Path(config.event_log_path)))
    sinks.extend(extra or [])
    return sinks[0] if len(sinks) == 1 else MultiEventSink(sinks)


def build_registry(config: RegistryConfig, extra_sinks: Optional[List[EventSink]] = None) -> FractalRegistry:
    kv = open_store(config.db_path, circuit=DbCircuitBreaker(CircuitBreakerConfig.from_env()))
    return FractalRegistry(
        kv,
        id_scheme=config.id_scheme,
        events=build_event_sink(config, extra_sinks),
    )
