"""Fractal access-grant registry.

The registry records that an owner account has authorized a grantee public key
to access a named `data_id`, optionally until a point in time, and answers
queries over any owner/grantee/data_id combination.

State lives in four tables on a key-value substrate (see tables.py):
the primary grant table plus by-owner, by-grantee and by-data_id indices.

Invariants:
- Every grant id in the primary table appears exactly once in the by-owner
  list for its owner, the by-grantee list for its grantee and the by-data_id
  list for its data_id, and nowhere else.
- Each call runs inside one storage unit. Either all of its writes commit or
  none do; notifications go out only after commit, in commit order.

Caller identity and the time reference are explicit inputs (CallContext);
the registry reads no ambient globals.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Tuple

from .errors import FR_E_CONFIG, bad_request, duplicate_grant, invalid_query, registry_error, timelocked
from .events import GRANT_DELETED, GRANT_INSERTED, EventSink, GrantEvent, LoggingEventSink
from .identity import ID_SCHEME_V1, check_scheme, derive_grant_id
from .keys import canonical_public_key, validate_account_id
from .models import CallContext, Grant, make_grant, resolve_locked_until, validate_data_id
from .query import QueryEngine
from .storage import KeyValueStore, MemoryKeyValueStore, open_store
from .tables import IndexSet, PrimaryStore

logger = logging.getLogger("fractal_registry")

NS_META = "meta"
META_ID_SCHEME = "id_scheme"


class FractalRegistry:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        id_scheme: str = ID_SCHEME_V1,
        events: Optional[EventSink] = None,
    ):
        self.kv = kv
        self.id_scheme = check_scheme(id_scheme)
        self.grants = PrimaryStore(kv)
        self.indices = IndexSet(kv)
        self.query = QueryEngine(self.grants, self.indices)
        self.events = events if events is not None else LoggingEventSink()
        # Held from commit through emit so notifications follow commit order.
        self._call_lock = threading.RLock()
        self._bind_id_scheme()

    @classmethod
    def in_memory(cls, **kwargs) -> "FractalRegistry":
        return cls(MemoryKeyValueStore(), **kwargs)

    @classmethod
    def open(cls, db_path: str, **kwargs) -> "FractalRegistry":
        return cls(open_store(db_path), **kwargs)

    def _bind_id_scheme(self) -> None:
        """Record the id scheme on first use; refuse to reopen with another."""
        with self.kv.atomic():
            stored = self.kv.get(NS_META, META_ID_SCHEME)
            if stored is None:
                self.kv.put(NS_META, META_ID_SCHEME, self.id_scheme)
            elif stored != self.id_scheme:
                raise registry_error(
                    FR_E_CONFIG,
                    f"store was created with id scheme {stored}, not {self.id_scheme}",
                    http_status=500,
                    stored=stored,
                    requested=self.id_scheme,
                )

    def derive_id(self, grant: Grant) -> str:
        return derive_grant_id(grant, scheme=self.id_scheme)

    # ---------------------------
    # Mutations
    # ---------------------------

    def insert_grant(
        self,
        ctx: CallContext,
        grantee: str,
        data_id: str,
        locked_until: Optional[int] = None,
    ) -> GrantEvent:
        """Record a new grant owned by the caller.

        Fails with FR_E_DUPLICATE_GRANT if the identical tuple already exists.
        """
        grant = make_grant(ctx.caller, grantee, data_id, locked_until)
        grant_id = self.derive_id(grant)

        with self._call_lock:
            with self.kv.atomic():
                if self.grants.contains(grant_id):
                    raise duplicate_grant(grant_id)
                self.grants.put(grant_id, grant)
                self.indices.add(grant_id, grant)

            logger.debug("grant %s inserted by %s", grant_id, grant.owner)
            return self._emit(GrantEvent(
                event=GRANT_INSERTED,
                owner=grant.owner,
                grantee=grant.grantee,
                data_id=grant.data_id,
                locked_until=grant.locked_until,
            ))

    def delete_grant(
        self,
        ctx: CallContext,
        grantee: str,
        data_id: str,
        locked_until: Optional[int] = None,
    ) -> GrantEvent:
        """Delete the caller's grants for (grantee, data_id).

        `locked_until` absent or 0 selects every matching grant; a nonzero value
        selects only the grant with exactly that lock. If any selected grant is
        still locked (locked_until >= now) nothing is deleted and the call fails
        with FR_E_TIMELOCKED.
        """
        owner = validate_account_id(ctx.caller)
        grantee = canonical_public_key(grantee)
        data_id = validate_data_id(data_id)
        lock_filter = resolve_locked_until(locked_until)
        now_ns = self._check_now(ctx)

        with self._call_lock:
            with self.kv.atomic():
                candidates: List[Tuple[str, Grant]] = [
                    (gid, grant)
                    for gid, grant in self.query.find_with_ids(owner=owner, grantee=grantee, data_id=data_id)
                    if lock_filter == 0 or grant.locked_until == lock_filter
                ]
                for gid, grant in candidates:
                    if not grant.locked_until < now_ns:
                        raise timelocked(gid, grant.locked_until, now_ns)
                for gid, grant in candidates:
                    self.grants.remove(gid)
                    self.indices.discard(gid, grant)

            logger.debug("%d grant(s) deleted by %s", len(candidates), owner)
            return self._emit(GrantEvent(
                event=GRANT_DELETED,
                owner=owner,
                grantee=grantee,
                data_id=data_id,
                locked_until=lock_filter,
            ))

    @staticmethod
    def _check_now(ctx: CallContext) -> int:
        if isinstance(ctx.now_ns, bool) or not isinstance(ctx.now_ns, int) or ctx.now_ns < 0:
            raise bad_request("time reference must be a non-negative integer")
        return ctx.now_ns

    def _emit(self, event: GrantEvent) -> GrantEvent:
        # Runs after commit. Sink errors are logged, not raised.
        try:
            self.events.emit(event)
        except Exception:
            logger.exception("event sink failed for %s", event.to_log_line())
        return event

    # ---------------------------
    # Queries
    # ---------------------------

    def find_grants(
        self,
        owner: Optional[str] = None,
        grantee: Optional[str] = None,
        data_id: Optional[str] = None,
    ) -> List[Grant]:
        """Grants matching every supplied criterion. Requires owner or grantee."""
        if owner is None and grantee is None:
            raise invalid_query()
        if owner is not None:
            validate_account_id(owner)
        if grantee is not None:
            grantee = canonical_public_key(grantee)
        if data_id is not None:
            validate_data_id(data_id)
        with self.kv.read_view():
            return self.query.find(owner=owner, grantee=grantee, data_id=data_id)

    def grants_for(self, grantee: str, data_id: str) -> List[Grant]:
        return self.find_grants(owner=None, grantee=grantee, data_id=data_id)

    # ---------------------------
    # Maintenance
    # ---------------------------

    def check_consistency(self) -> List[str]:
        """Audit the index consistency invariant. Returns a list of problems."""
        problems: List[str] = []
        with self.kv.read_view():
            records = self.grants.items()
            indexed = {index.field: dict(index.items()) for index in self.indices}

        known = {gid: grant for gid, grant in records}
        for gid, grant in records:
            derived = self.derive_id(grant)
            if derived != gid:
                problems.append(f"grant {gid}: record derives to {derived}")
            for index in self.indices:
                hits = indexed[index.field].get(index.key_for(grant), []).count(gid)
                if hits != 1:
                    problems.append(f"grant {gid}: listed {hits} time(s) in {index.field} index")

        for index in self.indices:
            for key, ids in indexed[index.field].items():
                for gid in ids:
                    grant = known.get(gid)
                    if grant is None:
                        problems.append(f"{index.field} index key {key!r}: dangling id {gid}")
                    elif index.key_for(grant) != key:
                        problems.append(f"{index.field} index key {key!r}: misfiled id {gid}")
        return problems

    def close(self) -> None:
        self.kv.close()
