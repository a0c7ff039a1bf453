"""Primary grant table and the three secondary indices.

Namespaces in the key-value substrate:

    g  grant id  -> grant record
    h  owner     -> [grant id, ...]
    i  grantee   -> [grant id, ...]
    j  data_id   -> [grant id, ...]

Index lists keep insertion order and never hold the same id twice. Removing
the last id of a key leaves an empty list behind; there is no index cleanup.
Neither table enforces cross-table consistency on its own; the mutation
coordinator in registry.py does.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Tuple

from .encoding import decode_grant, decode_id_list, encode_grant, encode_id_list
from .errors import FR_E_INDEX_CORRUPT, registry_error
from .models import Grant
from .storage import KeyValueStore

NS_GRANTS = "g"
NS_BY_OWNER = "h"
NS_BY_GRANTEE = "i"
NS_BY_DATA_ID = "j"

FIELD_OWNER = "owner"
FIELD_GRANTEE = "grantee"
FIELD_DATA_ID = "data_id"


class PrimaryStore:
    """grant id -> Grant."""

    def __init__(self, kv: KeyValueStore, ns: str = NS_GRANTS):
        self.kv = kv
        self.ns = ns

    def get(self, grant_id: str) -> Optional[Grant]:
        raw = self.kv.get(self.ns, grant_id)
        return decode_grant(raw) if raw is not None else None

    def contains(self, grant_id: str) -> bool:
        return self.kv.contains(self.ns, grant_id)

    def put(self, grant_id: str, grant: Grant) -> None:
        self.kv.put(self.ns, grant_id, encode_grant(grant))

    def remove(self, grant_id: str) -> None:
        self.kv.remove(self.ns, grant_id)

    def items(self) -> List[Tuple[str, Grant]]:
        return [(k, decode_grant(v)) for k, v in self.kv.scan(self.ns)]


class SecondaryIndex:
    """Lookup key -> ordered list of grant ids."""

    def __init__(self, kv: KeyValueStore, ns: str, field: str):
        self.kv = kv
        self.ns = ns
        self.field = field

    def key_for(self, grant: Grant) -> str:
        return getattr(grant, self.field)

    def get(self, key: str) -> List[str]:
        raw = self.kv.get(self.ns, key)
        return decode_id_list(raw) if raw is not None else []

    def append(self, key: str, grant_id: str) -> None:
        ids = self.get(key)
        if grant_id not in ids:
            ids.append(grant_id)
        self.kv.put(self.ns, key, encode_id_list(ids))

    def remove(self, key: str, grant_id: str) -> None:
        raw = self.kv.get(self.ns, key)
        if raw is None:
            raise registry_error(
                FR_E_INDEX_CORRUPT,
                f"index {self.field} has no entry for key",
                http_status=500,
                index=self.field,
                key=key,
                grant_id=grant_id,
            )
        ids = [i for i in decode_id_list(raw) if i != grant_id]
        self.kv.put(self.ns, key, encode_id_list(ids))

    def items(self) -> List[Tuple[str, List[str]]]:
        return [(k, decode_id_list(v)) for k, v in self.kv.scan(self.ns)]


class IndexSet:
    """The by-owner, by-grantee and by-data_id indices, updated together."""

    def __init__(self, kv: KeyValueStore):
        self.by_owner = SecondaryIndex(kv, NS_BY_OWNER, FIELD_OWNER)
        self.by_grantee = SecondaryIndex(kv, NS_BY_GRANTEE, FIELD_GRANTEE)
        self.by_data_id = SecondaryIndex(kv, NS_BY_DATA_ID, FIELD_DATA_ID)

    def __iter__(self) -> Iterator[SecondaryIndex]:
        return iter((self.by_owner, self.by_grantee, self.by_data_id))

    def add(self, grant_id: str, grant: Grant) -> None:
        for index in self:
            index.append(index.key_for(grant), grant_id)

    def discard(self, grant_id: str, grant: Grant) -> None:
        for index in self:
            index.remove(index.key_for(grant), grant_id)
