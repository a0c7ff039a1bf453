"""Stable error taxonomy for the Fractal registry.

Every caller-visible failure is a :class:`RegistryError` carrying a stable
`code` string. Failures abort the whole call; the storage layer discards every
effect of the aborted call, so no error path leaves partial state behind.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `http_status` for the HTTP layer, `retryable` for transient storage faults.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Policy violations
FR_E_DUPLICATE_GRANT = "FR_E_DUPLICATE_GRANT"
FR_E_TIMELOCKED = "FR_E_TIMELOCKED"
FR_E_INVALID_QUERY = "FR_E_INVALID_QUERY"

# Input / caller
FR_E_BAD_REQUEST = "FR_E_BAD_REQUEST"
FR_E_AUTH_REQUIRED = "FR_E_AUTH_REQUIRED"

# Internal / storage
FR_E_INDEX_CORRUPT = "FR_E_INDEX_CORRUPT"
FR_E_CONFIG = "FR_E_CONFIG"
FR_E_STORAGE_LOCKDOWN = "FR_E_STORAGE_LOCKDOWN"

# Messages surfaced verbatim to callers.
MSG_DUPLICATE_GRANT = "Grant already exists"
MSG_TIMELOCKED = "Grant is timelocked"
MSG_INVALID_QUERY = "Required argument: `owner` and/or `grantee`"


@dataclass
class RegistryError(Exception):
    """Base registry exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def registry_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> RegistryError:
    return RegistryError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def duplicate_grant(grant_id: str) -> RegistryError:
    return registry_error(FR_E_DUPLICATE_GRANT, MSG_DUPLICATE_GRANT, http_status=409, grant_id=grant_id)


def timelocked(grant_id: str, locked_until: int, now_ns: int) -> RegistryError:
    return registry_error(
        FR_E_TIMELOCKED,
        MSG_TIMELOCKED,
        http_status=409,
        grant_id=grant_id,
        locked_until=locked_until,
        now=now_ns,
    )


def invalid_query() -> RegistryError:
    return registry_error(FR_E_INVALID_QUERY, MSG_INVALID_QUERY, http_status=400)


def bad_request(message: str, **details: Any) -> RegistryError:
    return registry_error(FR_E_BAD_REQUEST, message, http_status=400, **details)
