import random
import threading

import pytest

from fractal_registry.errors import (
    FR_E_BAD_REQUEST,
    FR_E_CONFIG,
    FR_E_DUPLICATE_GRANT,
    FR_E_INDEX_CORRUPT,
    FR_E_INVALID_QUERY,
    FR_E_TIMELOCKED,
    MSG_DUPLICATE_GRANT,
    MSG_INVALID_QUERY,
    MSG_TIMELOCKED,
    RegistryError,
)
from fractal_registry.events import GRANT_DELETED, GRANT_INSERTED, EventSink, MemoryEventSink
from fractal_registry.keys import generate_public_key
from fractal_registry.models import CallContext, Grant
from fractal_registry.registry import FractalRegistry
from fractal_registry.storage import MemoryKeyValueStore, SQLiteKeyValueStore
from fractal_registry.tables import NS_BY_OWNER, NS_GRANTS


NOW = 1_700_000_000 * 10**9
HOUR = 3600 * 10**9

ALICE = "alice.near"
BOB = "bob.near"
CAROL = "carol.near"

K1 = generate_public_key()[0]
K2 = generate_public_key()[0]
K3 = generate_public_key()[0]


def ctx(caller: str, now_ns: int = NOW) -> CallContext:
    return CallContext(caller=caller, now_ns=now_ns)


@pytest.fixture(params=["memory", "sqlite"])
def kv(request, tmp_path):
    if request.param == "memory":
        return MemoryKeyValueStore()
    return SQLiteKeyValueStore(str(tmp_path / "registry.db"))


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
def registry(kv, sink):
    return FractalRegistry(kv, events=sink)


@pytest.fixture
def populated(registry):
    """Grants from the worked query example."""
    registry.insert_grant(ctx(ALICE), K1, "A1")
    registry.insert_grant(ctx(ALICE), K2, "A2")
    registry.insert_grant(ctx(BOB), K1, "B1")
    registry.insert_grant(ctx(BOB), K2, "A1")
    return registry


# ---------------------------
# Insert
# ---------------------------

def test_insert_records_grant_and_emits(registry, sink):
    event = registry.insert_grant(ctx(ALICE), K1, "A1", NOW + HOUR)

    assert registry.find_grants(owner=ALICE) == [Grant(ALICE, K1, "A1", NOW + HOUR)]
    assert sink.events == [event]
    assert event.to_dict() == {
        "standard": "FractalRegistry",
        "version": "0",
        "event": GRANT_INSERTED,
        "data": {"owner": ALICE, "grantee": K1, "data_id": "A1", "locked_until": NOW + HOUR},
    }


def test_insert_without_lock_defaults_to_zero(registry):
    registry.insert_grant(ctx(ALICE), K1, "A1")
    assert registry.find_grants(owner=ALICE)[0].locked_until == 0


def test_duplicate_insert_rejected(registry, sink):
    registry.insert_grant(ctx(ALICE), K1, "A1", 5)
    with pytest.raises(RegistryError) as ei:
        registry.insert_grant(ctx(ALICE), K1, "A1", 5)
    assert ei.value.code == FR_E_DUPLICATE_GRANT
    assert ei.value.message == MSG_DUPLICATE_GRANT
    assert ei.value.http_status == 409
    assert len(sink.events) == 1
    assert len(registry.find_grants(owner=ALICE)) == 1


def test_different_lock_is_a_different_grant(registry):
    registry.insert_grant(ctx(ALICE), K1, "A1", 5)
    registry.insert_grant(ctx(ALICE), K1, "A1", 6)
    assert [g.locked_until for g in registry.find_grants(owner=ALICE)] == [5, 6]


def test_unprefixed_grantee_is_canonicalized(registry):
    bare = K1.split(":", 1)[1]
    registry.insert_grant(ctx(ALICE), bare, "A1")
    assert registry.find_grants(grantee=K1)[0].grantee == K1
    assert registry.find_grants(grantee=bare)[0].grantee == K1
    with pytest.raises(RegistryError) as ei:
        registry.insert_grant(ctx(ALICE), K1, "A1")
    assert ei.value.code == FR_E_DUPLICATE_GRANT


@pytest.mark.parametrize(
    "caller, grantee, locked_until",
    [
        ("Not An Account", K1, None),
        (ALICE, "ed25519:not-base58!", None),
        (ALICE, K1, -1),
        (ALICE, K1, 2**64),
        (ALICE, K1, True),
    ],
)
def test_insert_rejects_bad_inputs(registry, sink, caller, grantee, locked_until):
    with pytest.raises(RegistryError) as ei:
        registry.insert_grant(ctx(caller), grantee, "A1", locked_until)
    assert ei.value.code == FR_E_BAD_REQUEST
    assert sink.events == []


# ---------------------------
# Query
# ---------------------------

def test_find_intersections(populated):
    assert populated.find_grants(owner=ALICE) == [
        Grant(ALICE, K1, "A1"),
        Grant(ALICE, K2, "A2"),
    ]
    assert populated.find_grants(grantee=K1) == [
        Grant(ALICE, K1, "A1"),
        Grant(BOB, K1, "B1"),
    ]
    assert populated.find_grants(owner=ALICE, grantee=K1) == [Grant(ALICE, K1, "A1")]
    assert populated.find_grants(grantee=K2, data_id="A1") == [Grant(BOB, K2, "A1")]
    assert populated.find_grants(owner=BOB, grantee=K2, data_id="A1") == [Grant(BOB, K2, "A1")]
    assert populated.find_grants(owner=ALICE, data_id="B1") == []


def test_owner_and_data_id_intersection(registry):
    owner = "owner.near"
    bob, charlie = K1, K2
    registry.insert_grant(ctx(owner), bob, "A1")
    registry.insert_grant(ctx(owner), bob, "A2")
    registry.insert_grant(ctx(owner), charlie, "A2")

    assert registry.find_grants(owner=owner, data_id="A2") == [
        Grant(owner, bob, "A2"),
        Grant(owner, charlie, "A2"),
    ]


def test_find_unknown_keys_return_empty(populated):
    assert populated.find_grants(owner=CAROL) == []
    assert populated.find_grants(grantee=K3) == []
    assert populated.find_grants(owner=ALICE, data_id="nope") == []


def test_grants_for(populated):
    assert populated.grants_for(K2, "A1") == [Grant(BOB, K2, "A1")]
    assert populated.grants_for(K3, "A1") == []


def test_query_needs_owner_or_grantee(populated):
    for kwargs in ({}, {"data_id": "A1"}):
        with pytest.raises(RegistryError) as ei:
            populated.find_grants(**kwargs)
        assert ei.value.code == FR_E_INVALID_QUERY
        assert ei.value.message == MSG_INVALID_QUERY
        assert ei.value.http_status == 400


def test_find_rejects_malformed_grantee(populated):
    with pytest.raises(RegistryError) as ei:
        populated.find_grants(grantee="rsa:abc")
    assert ei.value.code == FR_E_BAD_REQUEST


# ---------------------------
# Delete
# ---------------------------

def test_delete_unlocked_grant(populated, sink):
    event = populated.delete_grant(ctx(ALICE), K1, "A1")

    assert populated.find_grants(owner=ALICE) == [Grant(ALICE, K2, "A2")]
    assert populated.find_grants(grantee=K1) == [Grant(BOB, K1, "B1")]
    assert sink.events[-1] == event
    assert event.event == GRANT_DELETED
    assert event.to_dict()["data"] == {
        "owner": ALICE, "grantee": K1, "data_id": "A1", "locked_until": 0,
    }
    assert populated.check_consistency() == []


def test_delete_leaves_other_owners_alone(populated):
    populated.delete_grant(ctx(BOB), K2, "A1")
    assert populated.find_grants(grantee=K2) == [Grant(ALICE, K2, "A2")]
    assert populated.find_grants(owner=ALICE) == [
        Grant(ALICE, K1, "A1"),
        Grant(ALICE, K2, "A2"),
    ]


def test_delete_refused_while_locked(registry, sink):
    registry.insert_grant(ctx(ALICE), K1, "A1", NOW + HOUR)
    with pytest.raises(RegistryError) as ei:
        registry.delete_grant(ctx(ALICE), K1, "A1")
    assert ei.value.code == FR_E_TIMELOCKED
    assert ei.value.message == MSG_TIMELOCKED
    assert ei.value.http_status == 409
    assert len(registry.find_grants(owner=ALICE)) == 1
    assert [e.event for e in sink.events] == [GRANT_INSERTED]

    registry.delete_grant(ctx(ALICE, NOW + 2 * HOUR), K1, "A1")
    assert registry.find_grants(owner=ALICE) == []


def test_lock_equal_to_now_still_blocks(registry):
    registry.insert_grant(ctx(ALICE), K1, "A1", NOW)
    with pytest.raises(RegistryError) as ei:
        registry.delete_grant(ctx(ALICE, NOW), K1, "A1")
    assert ei.value.code == FR_E_TIMELOCKED

    registry.delete_grant(ctx(ALICE, NOW + 1), K1, "A1")
    assert registry.find_grants(owner=ALICE) == []


def test_lock_filter_on_expired_grants(registry, sink):
    eve = generate_public_key()[0]
    locks = [NOW - 3 * HOUR, NOW - 2 * HOUR, NOW - HOUR]
    for lock in locks:
        registry.insert_grant(ctx(ALICE), eve, "A3", lock)

    registry.delete_grant(ctx(ALICE), eve, "A3", locks[1])
    assert [g.locked_until for g in registry.grants_for(eve, "A3")] == [locks[0], locks[2]]

    event = registry.delete_grant(ctx(ALICE), eve, "A3")
    assert registry.grants_for(eve, "A3") == []
    assert event.locked_until == 0
    assert [e.event for e in sink.events].count(GRANT_DELETED) == 2


def test_lock_filter_selects_exact_grant(registry):
    for lock in (0, NOW - HOUR, NOW + HOUR):
        registry.insert_grant(ctx(ALICE), K3, "A3", lock)

    registry.delete_grant(ctx(ALICE), K3, "A3", NOW - HOUR)
    assert [g.locked_until for g in registry.find_grants(owner=ALICE)] == [0, NOW + HOUR]

    # Filter 0 selects everything, including the still-locked grant: nothing goes.
    with pytest.raises(RegistryError) as ei:
        registry.delete_grant(ctx(ALICE), K3, "A3", 0)
    assert ei.value.code == FR_E_TIMELOCKED
    assert [g.locked_until for g in registry.find_grants(owner=ALICE)] == [0, NOW + HOUR]

    # Past the lock, an unfiltered delete clears both.
    registry.delete_grant(ctx(ALICE, NOW + 2 * HOUR), K3, "A3")
    assert registry.find_grants(owner=ALICE) == []
    assert registry.check_consistency() == []


def test_delete_is_all_or_nothing(registry, sink):
    registry.insert_grant(ctx(ALICE), K1, "A1", 0)
    registry.insert_grant(ctx(ALICE), K1, "A1", NOW + HOUR)
    before = len(sink.events)

    with pytest.raises(RegistryError):
        registry.delete_grant(ctx(ALICE), K1, "A1")

    assert len(registry.find_grants(owner=ALICE, grantee=K1, data_id="A1")) == 2
    assert len(sink.events) == before
    assert registry.check_consistency() == []


def test_delete_without_match_succeeds_and_emits(registry, sink):
    event = registry.delete_grant(ctx(ALICE), K1, "nothing-here", 42)
    assert event.event == GRANT_DELETED
    assert event.locked_until == 42
    assert sink.events == [event]


def test_delete_rejects_bad_time_reference(registry):
    registry.insert_grant(ctx(ALICE), K1, "A1")
    with pytest.raises(RegistryError) as ei:
        registry.delete_grant(ctx(ALICE, -1), K1, "A1")
    assert ei.value.code == FR_E_BAD_REQUEST


def test_reinsert_after_delete(registry):
    registry.insert_grant(ctx(ALICE), K1, "A1")
    registry.delete_grant(ctx(ALICE), K1, "A1")
    registry.insert_grant(ctx(ALICE), K1, "A1")
    assert registry.find_grants(owner=ALICE) == [Grant(ALICE, K1, "A1")]
    assert registry.check_consistency() == []


# ---------------------------
# Consistency and storage
# ---------------------------

def test_indices_stay_consistent_over_random_calls(registry):
    rng = random.Random(20231114)
    owners = [ALICE, BOB, CAROL]
    keys = [K1, K2, K3]
    data_ids = ["A1", "A2", "A3"]
    locks = [0, NOW - HOUR, NOW + HOUR]
    expected = set()

    for step in range(150):
        owner, key, data_id = rng.choice(owners), rng.choice(keys), rng.choice(data_ids)
        if rng.random() < 0.6:
            grant = Grant(owner, key, data_id, rng.choice(locks))
            try:
                registry.insert_grant(ctx(owner), key, data_id, grant.locked_until)
                expected.add(grant)
            except RegistryError as e:
                assert e.code == FR_E_DUPLICATE_GRANT
                assert grant in expected
        else:
            lock_filter = rng.choice([None, 0, NOW - HOUR, NOW + HOUR])
            selected = {
                g for g in expected
                if (g.owner, g.grantee, g.data_id) == (owner, key, data_id)
                and (not lock_filter or g.locked_until == lock_filter)
            }
            try:
                registry.delete_grant(ctx(owner), key, data_id, lock_filter)
                expected -= selected
            except RegistryError as e:
                assert e.code == FR_E_TIMELOCKED
                assert any(g.locked_until >= NOW for g in selected)

        assert registry.check_consistency() == [], f"step {step}"

    for owner in owners:
        assert set(registry.find_grants(owner=owner)) == {g for g in expected if g.owner == owner}


class _GatedSink(EventSink):
    """Holds the first notification until released."""

    def __init__(self):
        self.names = []
        self.entered = threading.Event()
        self.release = threading.Event()

    def emit(self, event):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        self.names.append(event.event)


def test_notifications_follow_commit_order(kv):
    sink = _GatedSink()
    registry = FractalRegistry(kv, events=sink)

    inserter = threading.Thread(target=registry.insert_grant, args=(ctx(ALICE), K1, "A1"))
    inserter.start()
    assert sink.entered.wait(timeout=5)

    # The insert has committed and is mid-notification; a delete must wait for it.
    deleter = threading.Thread(target=registry.delete_grant, args=(ctx(ALICE), K1, "A1"))
    deleter.start()
    deleter.join(timeout=0.2)
    assert deleter.is_alive()

    sink.release.set()
    inserter.join(timeout=5)
    deleter.join(timeout=5)

    assert sink.names == [GRANT_INSERTED, GRANT_DELETED]
    assert registry.find_grants(owner=ALICE) == []


def test_consistency_detects_dangling_index_entry(populated):
    gid = populated.derive_id(Grant(ALICE, K1, "A1"))
    populated.kv.remove(NS_GRANTS, gid)

    problems = populated.check_consistency()
    assert problems
    assert any("dangling" in p for p in problems)

    with pytest.raises(RegistryError) as ei:
        populated.find_grants(owner=ALICE)
    assert ei.value.code == FR_E_INDEX_CORRUPT


def test_consistency_detects_missing_index_entry(populated):
    populated.kv.put(NS_BY_OWNER, ALICE, "[]")
    problems = populated.check_consistency()
    assert len(problems) == 2
    assert all("owner index" in p for p in problems)


def test_state_survives_reopen(tmp_path):
    path = str(tmp_path / "registry.db")
    first = FractalRegistry.open(path, events=MemoryEventSink())
    first.insert_grant(ctx(ALICE), K1, "A1", 7)
    first.close()

    second = FractalRegistry.open(path, events=MemoryEventSink())
    assert second.find_grants(owner=ALICE) == [Grant(ALICE, K1, "A1", 7)]


def test_id_scheme_pinned_per_store(tmp_path):
    path = str(tmp_path / "registry.db")
    FractalRegistry.open(path, id_scheme="v2", events=MemoryEventSink()).close()

    with pytest.raises(RegistryError) as ei:
        FractalRegistry.open(path, id_scheme="v1")
    assert ei.value.code == FR_E_CONFIG


def test_v2_registry_keeps_colliding_tuples_apart():
    registry = FractalRegistry.in_memory(id_scheme="v2", events=MemoryEventSink())
    registry.insert_grant(ctx(ALICE), K1, "x1", 0)
    registry.insert_grant(ctx(ALICE), K1, "x", 10)
    assert len(registry.find_grants(owner=ALICE)) == 2


def test_v1_registry_treats_colliding_tuples_as_duplicates():
    registry = FractalRegistry.in_memory(events=MemoryEventSink())
    registry.insert_grant(ctx(ALICE), K1, "x1", 0)
    with pytest.raises(RegistryError) as ei:
        registry.insert_grant(ctx(ALICE), K1, "x", 10)
    assert ei.value.code == FR_E_DUPLICATE_GRANT


class _BrokenSink(EventSink):
    def emit(self, event):
        raise RuntimeError("sink down")


def test_failing_sink_does_not_fail_committed_call():
    registry = FractalRegistry.in_memory(events=_BrokenSink())
    event = registry.insert_grant(ctx(ALICE), K1, "A1")
    assert event.event == GRANT_INSERTED
    assert registry.find_grants(owner=ALICE) == [Grant(ALICE, K1, "A1")]
