"""Replenishment planning over a snapshot.

Everything here is a pure function of a :class:`~stock_planner.schemas.Snapshot`
and a :class:`PlanningConfig`.

A (store, product) pair takes part only while it is enabled; a missing
enablement row counts as enabled. A pair is low on stock when its on-hand
quantity is strictly below the threshold, and only low pairs produce a need of
``max(0, target - on_hand)``. Products with ``make_enabled`` switched off never
appear in a plan.
"""
from __future__ import annotations

import csv
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from io import StringIO

from .errors import EntityNotFoundError
from .schemas import (
    AggregateReplenishmentLine,
    InventoryItem,
    PlanSummary,
    Product,
    ReplenishmentLine,
    SalesLine,
    Snapshot,
    StockRow,
    Store,
    utcnow,
)

ALL_STORES = "__all__"


@dataclass(frozen=True)
class PlanningConfig:
    default_target_qty: int = 5
    low_stock_threshold: int = 2

    def __post_init__(self) -> None:
        if self.default_target_qty < 0:
            raise ValueError("Target quantity cannot be negative.")
        if self.low_stock_threshold < 0:
            raise ValueError("Low-stock threshold cannot be negative.")


def effective_target(store: Store | None, config: PlanningConfig) -> int:
    if store is not None and store.target_qty_override is not None and store.target_qty_override > 0:
        return store.target_qty_override
    return config.default_target_qty


def is_low_stock(on_hand: int, config: PlanningConfig) -> bool:
    return on_hand < config.low_stock_threshold


def need_for(on_hand: int, target: int, config: PlanningConfig) -> int:
    if not is_low_stock(on_hand, config):
        return 0
    return max(0, target - on_hand)


def _scope_stores(snapshot: Snapshot, scope: str) -> list[Store]:
    if scope == ALL_STORES:
        return list(snapshot.stores)
    store = snapshot.find_store(scope)
    if store is None:
        raise EntityNotFoundError(f"Store {scope} not found")
    return [store]


def _enabled_pairs(
    snapshot: Snapshot, stores: Sequence[Store], category: str | None
) -> Iterator[tuple[Store, Product, int]]:
    enabled = {state.key: state.enabled for state in snapshot.store_product_states}
    on_hand = {item.key: item.on_hand_qty for item in snapshot.inventory}
    for store in stores:
        for product in snapshot.products:
            if category is not None and (product.category or "") != category:
                continue
            key = (store.id, product.id)
            if not enabled.get(key, True):
                continue
            yield store, product, on_hand.get(key, 0)


def stock_rows(
    snapshot: Snapshot,
    config: PlanningConfig,
    *,
    store_id: str = ALL_STORES,
    category: str | None = None,
    only_low_stock: bool = False,
) -> list[StockRow]:
    """Current stock for every enabled pair in scope, zero where nothing was counted."""

    rows = [
        StockRow(
            store_id=store.id,
            store_name=store.name,
            product_id=product.id,
            product_name=product.name,
            category=product.category,
            on_hand_qty=qty,
            low_stock=is_low_stock(qty, config),
        )
        for store, product, qty in _enabled_pairs(
            snapshot, _scope_stores(snapshot, store_id), category
        )
    ]
    if only_low_stock:
        rows = [row for row in rows if row.low_stock]
    rows.sort(key=lambda row: (row.store_name, row.category or "", row.product_name))
    return rows


def store_plan(
    snapshot: Snapshot, store_id: str, config: PlanningConfig, *, category: str | None = None
) -> list[ReplenishmentLine]:
    """Needs of one store, largest first, ties broken by product name."""

    stores = _scope_stores(snapshot, store_id)
    target = effective_target(stores[0], config)
    lines = []
    for store, product, qty in _enabled_pairs(snapshot, stores, category):
        if not product.make_enabled:
            continue
        need = need_for(qty, target, config)
        if need > 0:
            lines.append(
                ReplenishmentLine(
                    store_id=store.id,
                    product_id=product.id,
                    product_name=product.name,
                    category=product.category,
                    on_hand_qty=qty,
                    target_qty=target,
                    need=need,
                )
            )
    lines.sort(key=lambda line: (-line.need, line.product_name))
    return lines


def global_plan(
    snapshot: Snapshot, config: PlanningConfig, *, category: str | None = None
) -> list[AggregateReplenishmentLine]:
    """Needs summed per product over every store carrying it."""

    totals: dict[str, AggregateReplenishmentLine] = {}
    for store, product, qty in _enabled_pairs(snapshot, snapshot.stores, category):
        if not product.make_enabled:
            continue
        need = need_for(qty, effective_target(store, config), config)
        if need <= 0:
            continue
        line = totals.get(product.id)
        if line is None:
            line = totals[product.id] = AggregateReplenishmentLine(
                product_id=product.id,
                product_name=product.name,
                category=product.category,
                total_need=0,
            )
        line.total_need += need
        line.store_needs[store.id] = need
    return sorted(totals.values(), key=lambda line: (-line.total_need, line.product_name))


def plan_replenishment(
    snapshot: Snapshot,
    config: PlanningConfig,
    scope: str = ALL_STORES,
    *,
    category: str | None = None,
) -> list[ReplenishmentLine] | list[AggregateReplenishmentLine]:
    if scope == ALL_STORES:
        return global_plan(snapshot, config, category=category)
    return store_plan(snapshot, scope, config, category=category)


def summarize(
    snapshot: Snapshot,
    config: PlanningConfig,
    scope: str = ALL_STORES,
    *,
    category: str | None = None,
) -> PlanSummary:
    rows = stock_rows(snapshot, config, store_id=scope, category=category)
    lines = plan_replenishment(snapshot, config, scope, category=category)
    if scope == ALL_STORES:
        total_need = sum(line.total_need for line in lines)
        target = config.default_target_qty
        override_active = False
    else:
        total_need = sum(line.need for line in lines)
        store = snapshot.find_store(scope)
        target = effective_target(store, config)
        override_active = target != config.default_target_qty
    return PlanSummary(
        store_count=len(_scope_stores(snapshot, scope)),
        low_stock_count=sum(1 for row in rows if row.low_stock),
        total_need=total_need,
        need_product_count=len({line.product_id for line in lines}),
        target_qty=target,
        target_override_active=override_active,
    )


def plan_to_csv(
    snapshot: Snapshot, lines: Sequence[ReplenishmentLine] | Sequence[AggregateReplenishmentLine]
) -> str:
    """Render a make list as CSV text."""

    buffer = StringIO()
    writer = csv.writer(buffer)
    store_names = {store.id: store.name for store in snapshot.stores}
    if lines and isinstance(lines[0], AggregateReplenishmentLine):
        writer.writerow(["category", "product", "total_need"])
        for line in lines:
            writer.writerow([line.category or "-", line.product_name, line.total_need])
    else:
        writer.writerow(["store", "category", "product", "on_hand", "target", "need"])
        for line in lines:
            writer.writerow(
                [
                    store_names.get(line.store_id, line.store_id),
                    line.category or "-",
                    line.product_name,
                    line.on_hand_qty,
                    line.target_qty,
                    line.need,
                ]
            )
    return buffer.getvalue()


def inventory_after_sales(
    snapshot: Snapshot,
    store_id: str,
    lines: Iterable[SalesLine],
    *,
    now: Callable[[], datetime] = utcnow,
) -> list[InventoryItem]:
    """Stock counts for one store once a sales settlement is applied.

    Sold units come off the on-hand count, which never drops below zero; a
    negative line puts units back. Lines for the same product are summed first
    and products that net out to zero are left alone.
    """

    sold: dict[str, int] = {}
    for line in lines:
        sold[line.product_id] = sold.get(line.product_id, 0) + line.sold_qty
    stamp = now()
    items = []
    for product_id, qty in sold.items():
        if qty == 0:
            continue
        current = snapshot.find_inventory(store_id, product_id)
        on_hand = current.on_hand_qty if current is not None else 0
        items.append(
            InventoryItem(
                store_id=store_id,
                product_id=product_id,
                on_hand_qty=max(0, on_hand - qty),
                updated_at=stamp,
            )
        )
    return items


__all__ = [
    "ALL_STORES",
    "PlanningConfig",
    "effective_target",
    "is_low_stock",
    "need_for",
    "stock_rows",
    "store_plan",
    "global_plan",
    "plan_replenishment",
    "summarize",
    "plan_to_csv",
    "inventory_after_sales",
]
