from __future__ import annotations

import csv
from io import StringIO

import pytest

from stock_planner.errors import EntityNotFoundError
from stock_planner.planner import (
    ALL_STORES,
    PlanningConfig,
    global_plan,
    inventory_after_sales,
    need_for,
    plan_replenishment,
    plan_to_csv,
    stock_rows,
    store_plan,
    summarize,
)
from stock_planner.schemas import (
    InventoryItem,
    Product,
    SalesLine,
    Snapshot,
    Store,
    StoreProductState,
)

CONFIG = PlanningConfig(default_target_qty=5, low_stock_threshold=2)


def _snapshot(
    products: list[Product],
    stores: list[Store],
    on_hand: dict[tuple[str, str], int] | None = None,
    disabled: set[tuple[str, str]] | None = None,
) -> Snapshot:
    inventory = [
        InventoryItem(store_id=store_id, product_id=product_id, on_hand_qty=qty)
        for (store_id, product_id), qty in (on_hand or {}).items()
    ]
    states = [
        StoreProductState(store_id=store_id, product_id=product_id, enabled=False)
        for store_id, product_id in (disabled or set())
    ]
    return Snapshot(
        products=tuple(products),
        stores=tuple(stores),
        inventory=tuple(inventory),
        store_product_states=tuple(states),
    )


def test_need_below_threshold_fills_to_target() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")], [Store(id="s1", name="Mapo")], {("s1", "p1"): 1}
    )

    lines = store_plan(snapshot, "s1", CONFIG)

    assert len(lines) == 1
    assert lines[0].need == 4
    assert lines[0].target_qty == 5
    assert lines[0].on_hand_qty == 1


def test_stock_at_threshold_needs_nothing() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")], [Store(id="s1", name="Mapo")], {("s1", "p1"): 2}
    )

    assert store_plan(snapshot, "s1", CONFIG) == []
    assert need_for(2, 5, CONFIG) == 0
    assert need_for(1, 5, CONFIG) == 4


def test_missing_inventory_counts_as_zero() -> None:
    snapshot = _snapshot([Product(id="p1", name="Candle")], [Store(id="s1", name="Mapo")])

    lines = store_plan(snapshot, "s1", CONFIG)

    assert [(line.on_hand_qty, line.need) for line in lines] == [(0, 5)]


def test_make_disabled_products_are_never_planned() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle", make_enabled=False)],
        [Store(id="s1", name="Mapo")],
        {("s1", "p1"): 0},
    )

    assert store_plan(snapshot, "s1", CONFIG) == []
    assert global_plan(snapshot, CONFIG) == []


def test_store_override_replaces_default_target() -> None:
    config = PlanningConfig(default_target_qty=5, low_stock_threshold=4)
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")],
        [Store(id="s1", name="Mapo", target_qty_override=10)],
        {("s1", "p1"): 3},
    )

    lines = store_plan(snapshot, "s1", config)

    assert lines[0].target_qty == 10
    assert lines[0].need == 7


def test_zero_override_falls_back_to_default() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")],
        [Store(id="s1", name="Mapo", target_qty_override=0)],
        {("s1", "p1"): 0},
    )

    assert store_plan(snapshot, "s1", CONFIG)[0].target_qty == 5


def test_disabled_pair_is_excluded_but_absent_state_is_enabled() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle"), Product(id="p2", name="Soap")],
        [Store(id="s1", name="Mapo")],
        {("s1", "p1"): 0, ("s1", "p2"): 0},
        disabled={("s1", "p1")},
    )

    lines = store_plan(snapshot, "s1", CONFIG)

    assert [line.product_id for line in lines] == ["p2"]


def test_global_plan_sums_needs_across_stores() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")],
        [Store(id="s1", name="Mapo"), Store(id="s2", name="Seongsu", target_qty_override=8)],
        {("s1", "p1"): 0, ("s2", "p1"): 1},
    )

    lines = plan_replenishment(snapshot, CONFIG, ALL_STORES)

    assert len(lines) == 1
    assert lines[0].total_need == 5 + 7
    assert lines[0].store_needs == {"s1": 5, "s2": 7}


def test_global_plan_skips_disabled_store_pairs() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle")],
        [Store(id="s1", name="Mapo"), Store(id="s2", name="Seongsu")],
        {("s1", "p1"): 0, ("s2", "p1"): 0},
        disabled={("s2", "p1")},
    )

    lines = global_plan(snapshot, CONFIG)

    assert lines[0].total_need == 5
    assert lines[0].store_needs == {"s1": 5}


def test_plan_is_sorted_by_need_then_name() -> None:
    snapshot = _snapshot(
        [
            Product(id="p1", name="Soap"),
            Product(id="p2", name="Candle"),
            Product(id="p3", name="Diffuser"),
        ],
        [Store(id="s1", name="Mapo")],
        {("s1", "p1"): 1, ("s1", "p2"): 1, ("s1", "p3"): 0},
    )

    lines = store_plan(snapshot, "s1", CONFIG)

    assert [line.product_name for line in lines] == ["Diffuser", "Candle", "Soap"]


def test_category_filter_limits_plan() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle", category="Home"), Product(id="p2", name="Soap", category="Bath")],
        [Store(id="s1", name="Mapo")],
    )

    lines = store_plan(snapshot, "s1", CONFIG, category="Bath")

    assert [line.product_id for line in lines] == ["p2"]


def test_unknown_store_scope_raises() -> None:
    snapshot = _snapshot([Product(id="p1", name="Candle")], [Store(id="s1", name="Mapo")])

    with pytest.raises(EntityNotFoundError):
        plan_replenishment(snapshot, CONFIG, "missing")


def test_stock_rows_sorted_and_filterable() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Soap", category="Bath"), Product(id="p2", name="Candle", category="Home")],
        [Store(id="s2", name="Seongsu"), Store(id="s1", name="Mapo")],
        {("s1", "p1"): 7, ("s2", "p2"): 1},
        disabled={("s2", "p1")},
    )

    rows = stock_rows(snapshot, CONFIG)
    assert [(row.store_name, row.product_name, row.on_hand_qty) for row in rows] == [
        ("Mapo", "Soap", 7),
        ("Mapo", "Candle", 0),
        ("Seongsu", "Candle", 1),
    ]

    low = stock_rows(snapshot, CONFIG, only_low_stock=True)
    assert [(row.store_id, row.product_id) for row in low] == [("s1", "p2"), ("s2", "p2")]


def test_summary_counts_low_stock_and_need() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle"), Product(id="p2", name="Soap")],
        [Store(id="s1", name="Mapo"), Store(id="s2", name="Seongsu", target_qty_override=9)],
        {("s1", "p1"): 0, ("s1", "p2"): 6, ("s2", "p1"): 1, ("s2", "p2"): 3},
    )

    overall = summarize(snapshot, CONFIG)
    assert overall.store_count == 2
    assert overall.low_stock_count == 2
    assert overall.total_need == 5 + 8
    assert overall.need_product_count == 1

    per_store = summarize(snapshot, CONFIG, "s2")
    assert per_store.store_count == 1
    assert per_store.target_qty == 9
    assert per_store.target_override_active is True
    assert per_store.total_need == 8


def test_plan_csv_export() -> None:
    snapshot = _snapshot(
        [Product(id="p1", name="Candle", category="Home")],
        [Store(id="s1", name="Mapo")],
        {("s1", "p1"): 1},
    )

    per_store = list(csv.reader(StringIO(plan_to_csv(snapshot, store_plan(snapshot, "s1", CONFIG)))))
    assert per_store == [
        ["store", "category", "product", "on_hand", "target", "need"],
        ["Mapo", "Home", "Candle", "1", "5", "4"],
    ]

    overall = list(csv.reader(StringIO(plan_to_csv(snapshot, global_plan(snapshot, CONFIG)))))
    assert overall == [["category", "product", "total_need"], ["Home", "Candle", "4"]]


def test_negative_config_is_rejected() -> None:
    with pytest.raises(ValueError):
        PlanningConfig(default_target_qty=-1)
    with pytest.raises(ValueError):
        PlanningConfig(low_stock_threshold=-1)


def test_sales_take_stock_down_to_zero_and_corrections_put_it_back() -> None:
    products = [Product(id="p1", name="Candle"), Product(id="p2", name="Soap"), Product(id="p3", name="Wax")]
    snapshot = _snapshot(products, [Store(id="s1", name="Mapo")], {("s1", "p1"): 5, ("s1", "p2"): 1})
    lines = [
        SalesLine(product_id="p1", sold_qty=2),
        SalesLine(product_id="p1", sold_qty=1),
        SalesLine(product_id="p2", sold_qty=4),
        SalesLine(product_id="p3", sold_qty=-2),
    ]

    items = inventory_after_sales(snapshot, "s1", lines)

    assert [(item.product_id, item.on_hand_qty) for item in items] == [("p1", 2), ("p2", 0), ("p3", 2)]


def test_sales_netting_to_zero_leave_stock_alone() -> None:
    snapshot = _snapshot([Product(id="p1", name="Candle")], [Store(id="s1", name="Mapo")], {("s1", "p1"): 3})
    lines = [SalesLine(product_id="p1", sold_qty=2), SalesLine(product_id="p1", sold_qty=-2)]

    assert inventory_after_sales(snapshot, "s1", lines) == []
