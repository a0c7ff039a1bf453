"""Fractal access-grant registry.

Records that an owner account authorized a grantee public key to access a
named `data_id`, optionally until a point in time, and answers queries over
any owner/grantee/data_id combination.

- Content-derived grant ids (keccak-256), no sequence generator
- Primary table plus by-owner / by-grantee / by-data_id indices kept
  consistent inside one atomic storage unit per call
- Time-locked deletion, all-or-nothing per call
- EVENT_JSON notifications after commit

Convenience imports
------------------
The package avoids heavy import-time side effects. These are loaded lazily:

    from fractal_registry import FractalRegistry, CallContext, Grant, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "FractalRegistry",
    "CallContext",
    "Grant",
    "RegistryError",
    "derive_grant_id",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "FractalRegistry": ("fractal_registry.registry", "FractalRegistry"),
    "CallContext": ("fractal_registry.models", "CallContext"),
    "Grant": ("fractal_registry.models", "Grant"),
    "RegistryError": ("fractal_registry.errors", "RegistryError"),
    "derive_grant_id": ("fractal_registry.identity", "derive_grant_id"),
    "create_app": ("fractal_registry.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'fractal_registry' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
