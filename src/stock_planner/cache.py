"""Local snapshot ownership and pure snapshot transforms."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from .schemas import Category, InventoryItem, PairKey, Product, Snapshot, Store, StoreProductState

logger = logging.getLogger(__name__)

Listener = Callable[[Snapshot], None]


class SnapshotCache:
    """Holds the one mutable reference to the account :class:`Snapshot`.

    Snapshots themselves are immutable; every change publishes a new object so
    readers never observe a half-applied edit.
    """

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._snapshot = snapshot or Snapshot.empty()
        self._version = 0
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every publish, rollbacks included."""

        return self._version

    def publish(self, snapshot: Snapshot) -> Snapshot:
        """Replace the current snapshot, stamping a fresh ``updated_at``."""

        stamp = max(int(time.time() * 1000), self._snapshot.updated_at + 1)
        return self._set(snapshot.model_copy(update={"updated_at": stamp}))

    def restore(self, snapshot: Snapshot) -> Snapshot:
        """Put back an earlier snapshot exactly as it was."""

        return self._set(snapshot)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, snapshot: Snapshot) -> Snapshot:
        self._snapshot = snapshot
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener %r failed", listener)
        return snapshot


def put_product(snapshot: Snapshot, product: Product) -> Snapshot:
    if snapshot.find_product(product.id) is None:
        products = (product, *snapshot.products)
    else:
        products = tuple(product if p.id == product.id else p for p in snapshot.products)
    return snapshot.model_copy(update={"products": products})


def put_products(snapshot: Snapshot, products: Iterable[Product]) -> Snapshot:
    for product in products:
        snapshot = put_product(snapshot, product)
    return snapshot


def remove_product(snapshot: Snapshot, product_id: str) -> Snapshot:
    """Drop a product and cascade to its inventory and enablement rows."""

    return snapshot.model_copy(
        update={
            "products": tuple(p for p in snapshot.products if p.id != product_id),
            "inventory": tuple(i for i in snapshot.inventory if i.product_id != product_id),
            "store_product_states": tuple(
                s for s in snapshot.store_product_states if s.product_id != product_id
            ),
        }
    )


def put_store(snapshot: Snapshot, store: Store) -> Snapshot:
    if snapshot.find_store(store.id) is None:
        stores = (store, *snapshot.stores)
    else:
        stores = tuple(store if s.id == store.id else s for s in snapshot.stores)
    return snapshot.model_copy(update={"stores": stores})


def remove_store(snapshot: Snapshot, store_id: str) -> Snapshot:
    """Drop a store and cascade to its inventory and enablement rows."""

    return snapshot.model_copy(
        update={
            "stores": tuple(s for s in snapshot.stores if s.id != store_id),
            "inventory": tuple(i for i in snapshot.inventory if i.store_id != store_id),
            "store_product_states": tuple(
                s for s in snapshot.store_product_states if s.store_id != store_id
            ),
        }
    )


def put_inventory(snapshot: Snapshot, item: InventoryItem) -> Snapshot:
    if snapshot.find_inventory(item.store_id, item.product_id) is None:
        inventory = (item, *snapshot.inventory)
    else:
        inventory = tuple(item if i.key == item.key else i for i in snapshot.inventory)
    return snapshot.model_copy(update={"inventory": inventory})


def drop_inventory(snapshot: Snapshot, key: PairKey) -> Snapshot:
    return snapshot.model_copy(
        update={"inventory": tuple(i for i in snapshot.inventory if i.key != key)}
    )


def put_states(snapshot: Snapshot, states: Iterable[StoreProductState]) -> Snapshot:
    incoming = {state.key: state for state in states}
    kept = tuple(s for s in snapshot.store_product_states if s.key not in incoming)
    return snapshot.model_copy(
        update={"store_product_states": (*incoming.values(), *kept)}
    )


def drop_states(snapshot: Snapshot, keys: Iterable[PairKey]) -> Snapshot:
    doomed = set(keys)
    return snapshot.model_copy(
        update={
            "store_product_states": tuple(
                s for s in snapshot.store_product_states if s.key not in doomed
            )
        }
    )


def replace_states(snapshot: Snapshot, states: Iterable[StoreProductState]) -> Snapshot:
    return snapshot.model_copy(update={"store_product_states": tuple(states)})


def put_categories(snapshot: Snapshot, names: Iterable[str]) -> Snapshot:
    known = set(snapshot.category_names)
    added = [Category(name=name) for name in dict.fromkeys(names) if name and name not in known]
    if not added:
        return snapshot
    categories = sorted((*snapshot.categories, *added), key=lambda c: c.name)
    return snapshot.model_copy(update={"categories": tuple(categories)})


def remove_category(snapshot: Snapshot, name: str) -> Snapshot:
    return snapshot.model_copy(
        update={"categories": tuple(c for c in snapshot.categories if c.name != name)}
    )


__all__ = [
    "SnapshotCache",
    "put_product",
    "put_products",
    "remove_product",
    "put_store",
    "remove_store",
    "put_inventory",
    "drop_inventory",
    "put_states",
    "drop_states",
    "replace_states",
    "put_categories",
    "remove_category",
]
