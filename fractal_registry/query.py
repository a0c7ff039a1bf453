"""Multi-criteria grant lookup.

A query names any combination of owner, grantee and data_id, with at least
one of owner/grantee present. data_id alone is refused: it would let anyone
enumerate every grantee of a resource.

Each supplied criterion contributes its index list. The first list (owner if
given, else grantee) is the candidate set; candidates survive only if every
other list also holds them. Results follow the candidate list's insertion
order. That order is incidental and callers should not depend on it.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .errors import FR_E_INDEX_CORRUPT, invalid_query, registry_error
from .models import Grant
from .tables import IndexSet, PrimaryStore

logger = logging.getLogger("fractal_registry.query")


class QueryEngine:
    def __init__(self, grants: PrimaryStore, indices: IndexSet):
        self.grants = grants
        self.indices = indices

    def find_ids(
        self,
        owner: Optional[str] = None,
        grantee: Optional[str] = None,
        data_id: Optional[str] = None,
    ) -> List[str]:
        if owner is None and grantee is None:
            raise invalid_query()

        searches: List[List[str]] = []
        if owner is not None:
            searches.append(self.indices.by_owner.get(owner))
        if grantee is not None:
            searches.append(self.indices.by_grantee.get(grantee))
        if data_id is not None:
            searches.append(self.indices.by_data_id.get(data_id))

        head, tail = searches[0], [set(s) for s in searches[1:]]
        return [gid for gid in head if all(gid in s for s in tail)]

    def find_with_ids(
        self,
        owner: Optional[str] = None,
        grantee: Optional[str] = None,
        data_id: Optional[str] = None,
    ) -> List[Tuple[str, Grant]]:
        out: List[Tuple[str, Grant]] = []
        for gid in self.find_ids(owner=owner, grantee=grantee, data_id=data_id):
            grant = self.grants.get(gid)
            if grant is None:
                # Indexed id with no record: the consistency invariant is broken.
                logger.error("index references missing grant %s", gid)
                raise registry_error(
                    FR_E_INDEX_CORRUPT,
                    "index references a missing grant",
                    http_status=500,
                    grant_id=gid,
                )
            out.append((gid, grant))
        return out

    def find(
        self,
        owner: Optional[str] = None,
        grantee: Optional[str] = None,
        data_id: Optional[str] = None,
    ) -> List[Grant]:
        return [grant for _gid, grant in self.find_with_ids(owner=owner, grantee=grantee, data_id=data_id)]
