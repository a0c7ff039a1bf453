"""Registry data model."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .errors import bad_request
from .keys import canonical_public_key, validate_account_id

# locked_until is an unsigned 64-bit value in nanoseconds since the Unix epoch.
MAX_LOCKED_UNTIL = 2**64 - 1


@dataclass(frozen=True)
class Grant:
    """An authorization record: `owner` lets `grantee` access `data_id`.

    Grants are immutable. A different `locked_until` is a different grant.
    """

    owner: str
    grantee: str
    data_id: str
    locked_until: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Grant":
        return cls(
            owner=str(data["owner"]),
            grantee=str(data["grantee"]),
            data_id=str(data["data_id"]),
            locked_until=int(data.get("locked_until", 0)),
        )


@dataclass(frozen=True)
class CallContext:
    """Per-call inputs supplied by the interface layer.

    caller: authenticated account making the call (becomes a grant's owner).
    now_ns: current time reference in nanoseconds since the Unix epoch.
    """

    caller: str
    now_ns: int


def resolve_locked_until(value: Optional[int]) -> int:
    """Validate an optional lock value; absent means 0 (no lock)."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise bad_request("locked_until must be an unsigned integer", got=type(value).__name__)
    if value < 0 or value > MAX_LOCKED_UNTIL:
        raise bad_request("locked_until out of range", locked_until=value)
    return value


def validate_data_id(value: str) -> str:
    if not isinstance(value, str):
        raise bad_request("data_id must be a string", got=type(value).__name__)
    return value


def make_grant(owner: str, grantee: str, data_id: str, locked_until: Optional[int] = None) -> Grant:
    """Build a Grant from caller-supplied values, normalizing the grantee key."""
    return Grant(
        owner=validate_account_id(owner),
        grantee=canonical_public_key(grantee),
        data_id=validate_data_id(data_id),
        locked_until=resolve_locked_until(locked_until),
    )
