"""Materialization of missing store x product enablement rows."""
from __future__ import annotations

import logging
from collections.abc import Iterable

from .cache import SnapshotCache, replace_states
from .remote_store import EntityType, RemoteStore
from .schemas import PairKey, Snapshot, StoreProductState

logger = logging.getLogger(__name__)


def pair_signature(store_ids: Iterable[str], product_ids: Iterable[str]) -> str:
    """Cheap fingerprint of the id sets a reconciliation pass covered."""

    return f"{','.join(sorted(store_ids))}||{','.join(sorted(product_ids))}"


def missing_pairs(
    snapshot: Snapshot, store_ids: Iterable[str], product_ids: Iterable[str]
) -> list[PairKey]:
    existing = snapshot.state_keys()
    product_ids = list(product_ids)
    return [
        (store_id, product_id)
        for store_id in store_ids
        for product_id in product_ids
        if (store_id, product_id) not in existing
    ]


class Reconciler:
    """Keeps every known (store, product) pair backed by an explicit row.

    Existing rows are never rewritten, so an explicit ``enabled=False`` survives
    any number of passes.
    """

    def __init__(self, remote: RemoteStore, cache: SnapshotCache) -> None:
        self._remote = remote
        self._cache = cache
        self._signature: str | None = None

    @property
    def signature(self) -> str | None:
        return self._signature

    async def materialize(
        self, snapshot: Snapshot, store_ids: Iterable[str], product_ids: Iterable[str]
    ) -> tuple[StoreProductState, ...] | None:
        """Insert the missing pairs remotely and return the re-read state rows.

        Returns ``None`` without touching the remote store when nothing is missing.
        """

        missing = missing_pairs(snapshot, store_ids, product_ids)
        if not missing:
            return None
        logger.info("Materializing %d missing store/product states", len(missing))
        await self._remote.upsert_many(
            EntityType.STORE_PRODUCT_STATE,
            [
                StoreProductState(store_id=store_id, product_id=product_id, enabled=True)
                for store_id, product_id in missing
            ],
        )
        return await self._remote.load_store_product_states()

    async def ensure_completeness(self, store_ids: Iterable[str], product_ids: Iterable[str]) -> int:
        """Guarantee a state row for every pair of the given ids; returns rows inserted."""

        store_ids, product_ids = list(store_ids), list(product_ids)
        snapshot = self._cache.snapshot
        inserted = len(missing_pairs(snapshot, store_ids, product_ids))
        states = await self.materialize(snapshot, store_ids, product_ids)
        if states is not None:
            self._cache.publish(replace_states(self._cache.snapshot, states))
        return inserted

    async def reconcile(self, snapshot: Snapshot) -> Snapshot:
        """Refresh-path pass over a freshly loaded, not yet published snapshot."""

        signature = pair_signature(snapshot.store_ids, snapshot.product_ids)
        if signature == self._signature:
            return snapshot
        states = await self.materialize(snapshot, snapshot.store_ids, snapshot.product_ids)
        self._signature = signature
        if states is None:
            return snapshot
        return replace_states(snapshot, states)


__all__ = ["Reconciler", "missing_pairs", "pair_signature"]
