"""Record encoding for stored values.

Stored values are canonical JSON: sorted keys, no whitespace, UTF-8 preserved.
The same record always encodes to the same bytes, which keeps SQLite rows and
exported snapshots stable across processes.
"""

from __future__ import annotations

import json
from typing import Any, List

from .models import Grant


def canonical_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_grant(grant: Grant) -> str:
    return canonical_json_dumps(grant.to_dict())


def decode_grant(raw: str) -> Grant:
    return Grant.from_dict(json.loads(raw))


def encode_id_list(ids: List[str]) -> str:
    return canonical_json_dumps(list(ids))


def decode_id_list(raw: str) -> List[str]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("index entry must be a JSON list")
    return [str(x) for x in data]
