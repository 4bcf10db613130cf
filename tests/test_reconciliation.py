from __future__ import annotations

from stock_planner.cache import SnapshotCache
from stock_planner.reconciliation import Reconciler, missing_pairs, pair_signature
from stock_planner.remote_store import EntityType
from stock_planner.schemas import Product, Snapshot, Store, StoreProductState


async def _seed(remote) -> Snapshot:
    await remote.upsert_many(
        EntityType.STORE, [Store(id="s1", name="Mapo"), Store(id="s2", name="Seongsu")]
    )
    await remote.upsert_many(
        EntityType.PRODUCT, [Product(id="p1", name="Candle"), Product(id="p2", name="Soap")]
    )
    return await remote.load_all()


def test_pair_signature_ignores_order() -> None:
    assert pair_signature(["b", "a"], ["y", "x"]) == pair_signature(["a", "b"], ["x", "y"])
    assert pair_signature(["a"], ["x"]) == "a||x"


def test_missing_pairs_lists_uncovered_combinations() -> None:
    snapshot = Snapshot(
        store_product_states=(StoreProductState(store_id="s1", product_id="p1", enabled=False),)
    )

    assert missing_pairs(snapshot, ["s1", "s2"], ["p1"]) == [("s2", "p1")]


async def test_ensure_completeness_materializes_every_pair(remote) -> None:
    cache = SnapshotCache()
    cache.publish(await _seed(remote))
    reconciler = Reconciler(remote, cache)

    inserted = await reconciler.ensure_completeness(["s1", "s2"], ["p1", "p2"])

    assert inserted == 4
    assert cache.snapshot.state_keys() == {("s1", "p1"), ("s1", "p2"), ("s2", "p1"), ("s2", "p2")}
    assert all(state.enabled for state in cache.snapshot.store_product_states)
    stored = await remote.load_store_product_states()
    assert {state.key for state in stored} == cache.snapshot.state_keys()


async def test_explicit_disabled_state_survives(remote) -> None:
    await _seed(remote)
    await remote.upsert(
        EntityType.STORE_PRODUCT_STATE,
        StoreProductState(store_id="s1", product_id="p1", enabled=False),
    )
    cache = SnapshotCache()
    cache.publish(await remote.load_all())
    reconciler = Reconciler(remote, cache)

    inserted = await reconciler.ensure_completeness(["s1", "s2"], ["p1", "p2"])

    assert inserted == 3
    assert cache.snapshot.find_state("s1", "p1").enabled is False
    written = [records for kind, entity, records in remote.writes if kind == "upsert_many"][-1]
    assert ("s1", "p1") not in {state.key for state in written}


async def test_second_pass_writes_nothing(remote) -> None:
    cache = SnapshotCache()
    cache.publish(await _seed(remote))
    reconciler = Reconciler(remote, cache)
    await reconciler.ensure_completeness(["s1", "s2"], ["p1", "p2"])
    writes = remote.calls["upsert_many"]
    version = cache.version

    inserted = await reconciler.ensure_completeness(["s1", "s2"], ["p1", "p2"])

    assert inserted == 0
    assert remote.calls["upsert_many"] == writes
    assert cache.version == version


async def test_reconcile_skips_unchanged_id_sets(remote) -> None:
    snapshot = await _seed(remote)
    reconciler = Reconciler(remote, SnapshotCache())

    first = await reconciler.reconcile(snapshot)
    assert len(first.store_product_states) == 4
    assert reconciler.signature == "s1,s2||p1,p2"
    reads = remote.calls["load_store_product_states"]

    second = await reconciler.reconcile(snapshot)

    assert second is snapshot
    assert remote.calls["load_store_product_states"] == reads


async def test_reconcile_runs_again_when_a_store_appears(remote) -> None:
    reconciler = Reconciler(remote, SnapshotCache())
    await reconciler.reconcile(await _seed(remote))
    await remote.upsert(EntityType.STORE, Store(id="s3", name="Hapjeong"))

    refreshed = await reconciler.reconcile(await remote.load_all())

    assert {key for key in refreshed.state_keys() if key[0] == "s3"} == {("s3", "p1"), ("s3", "p2")}
