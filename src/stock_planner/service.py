"""Session-level facade: the snapshot, its refresh, and every mutation."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from .cache import (
    SnapshotCache,
    drop_inventory,
    drop_states,
    put_categories,
    put_inventory,
    put_product,
    put_products,
    put_states,
    put_store,
    remove_category,
    remove_product,
    remove_store,
    replace_states,
)
from .config import Settings
from .errors import EntityNotFoundError
from .importer import (
    MergeStrategy,
    dedupe_rows,
    detect_conflicts,
    new_id,
    normalize_category,
    parse_product_csv,
    plan_import,
    suspicious_identifier_warnings,
)
from .mutations import (
    DebouncedCommitter,
    DebouncedEdit,
    ErrorNotifier,
    ErrorListener,
    Mutation,
    MutationExecutor,
    MutationResult,
)
from .planner import ALL_STORES, PlanningConfig
from . import planner
from .reconciliation import Reconciler
from .refresh import RefreshCoordinator
from .remote_store import EntityType, RemoteStore
from .schemas import (
    AggregateReplenishmentLine,
    Category,
    ImportConflictReport,
    ImportResult,
    ImportRow,
    InventoryItem,
    PlanSummary,
    Product,
    ReplenishmentLine,
    SalesLine,
    Snapshot,
    StockRow,
    Store,
    StoreProductState,
    utcnow,
)

logger = logging.getLogger(__name__)

_STORE_TEXT_FIELDS = ("contact_name", "phone", "address", "memo")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    return text or None


class PlannerService:
    """Owns the local snapshot and routes every change through the pipelines."""

    def __init__(
        self,
        remote: RemoteStore,
        *,
        planning: PlanningConfig | None = None,
        quantity_debounce_seconds: float = 0.5,
        retry_delay_seconds: float = 0.35,
        refresh_after_failure: bool = True,
        post_mutation_refresh_seconds: float | None = 2.0,
    ) -> None:
        self._remote = remote
        self.planning = planning or PlanningConfig()
        self.cache = SnapshotCache()
        self.notifier = ErrorNotifier()
        self.reconciler = Reconciler(remote, self.cache)
        self.executor = MutationExecutor(
            self.cache,
            self.notifier,
            self.refresh,
            refresh_after_failure=refresh_after_failure,
        )
        self.debouncer = DebouncedCommitter(
            self.cache, self.executor, self.notifier, quantity_debounce_seconds
        )
        # Reloads keep local changes the server has not confirmed yet.
        self.refresher = RefreshCoordinator(
            self._load_snapshot,
            self.cache,
            retry_delay=retry_delay_seconds,
            overlay=self._pending_overlay,
        )
        self._post_mutation_refresh = post_mutation_refresh_seconds

    @classmethod
    def from_settings(cls, remote: RemoteStore, settings: Settings) -> "PlannerService":
        return cls(
            remote,
            planning=PlanningConfig(
                default_target_qty=settings.default_target_qty,
                low_stock_threshold=settings.low_stock_threshold,
            ),
            quantity_debounce_seconds=settings.quantity_debounce_seconds,
            retry_delay_seconds=settings.transient_retry_delay_seconds,
            refresh_after_failure=settings.refresh_after_failure,
            post_mutation_refresh_seconds=settings.post_mutation_refresh_seconds,
        )

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------
    @property
    def snapshot(self) -> Snapshot:
        return self.cache.snapshot

    def subscribe(self, listener: Callable[[Snapshot], None]) -> Callable[[], None]:
        return self.cache.subscribe(listener)

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        return self.notifier.subscribe(listener)

    def _pending_overlay(self, snapshot: Snapshot) -> Snapshot:
        return self.debouncer.overlay(self.executor.overlay(snapshot))

    async def _load_snapshot(self) -> Snapshot:
        snapshot = await self._remote.load_all()
        return await self.reconciler.reconcile(snapshot)

    async def refresh(self) -> Snapshot:
        return await self.refresher.refresh()

    async def ensure_completeness(self, store_ids: Iterable[str], product_ids: Iterable[str]) -> int:
        return await self.reconciler.ensure_completeness(store_ids, product_ids)

    def _require_product(self, product_id: str) -> Product:
        product = self.snapshot.find_product(product_id)
        if product is None:
            raise EntityNotFoundError(f"Product {product_id} not found")
        return product

    def _require_store(self, store_id: str) -> Store:
        store = self.snapshot.find_store(store_id)
        if store is None:
            raise EntityNotFoundError(f"Store {store_id} not found")
        return store

    def _schedule_refresh(self) -> None:
        if self._post_mutation_refresh is not None:
            self.refresher.schedule(self._post_mutation_refresh)

    async def _seed_states(
        self, store_ids: Sequence[str], product_ids: Sequence[str]
    ) -> Callable[[Snapshot], Snapshot] | None:
        states = await self.reconciler.materialize(self.snapshot, store_ids, product_ids)
        if states is None:
            return None
        return lambda snapshot: replace_states(snapshot, states)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    async def add_category(self, name: str) -> MutationResult:
        label = (name or "").strip()
        if not label:
            raise ValueError("Category name cannot be empty.")
        if label in self.snapshot.category_names:
            return MutationResult(ok=True, value=label)

        async def commit() -> None:
            await self._remote.upsert(EntityType.CATEGORY, Category(name=label))

        return await self.executor.execute(
            Mutation(
                description="Saving the category",
                apply=lambda s: put_categories(s, [label]),
                commit=commit,
                revert=lambda s: remove_category(s, label),
                value=label,
            )
        )

    async def delete_category(self, name: str) -> MutationResult:
        label = (name or "").strip()
        if label not in self.snapshot.category_names:
            raise EntityNotFoundError(f"Category {label} not found")

        async def commit() -> None:
            await self._remote.delete(EntityType.CATEGORY, label)

        return await self.executor.execute(
            Mutation(
                description="Deleting the category",
                apply=lambda s: remove_category(s, label),
                commit=commit,
                revert=lambda s: put_categories(s, [label]),
                value=label,
            )
        )

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    async def add_product(
        self,
        name: str,
        *,
        category: str | None = None,
        price: int | None = None,
        sku: str | None = None,
        barcode: str | None = None,
    ) -> MutationResult:
        label = (name or "").strip()
        if not label:
            raise ValueError("Product name cannot be empty.")
        product = Product(
            id=new_id("p"),
            name=label,
            category=normalize_category(category),
            price=max(0, int(price or 0)),
            sku=_clean(sku),
            barcode=_clean(barcode),
        )
        return await self._save_product(product, None, "Adding the product", seed=True)

    async def update_product(
        self,
        product_id: str,
        *,
        name: str,
        category: str | None = None,
        price: float | None = None,
        sku: str | None = None,
        barcode: str | None = None,
    ) -> MutationResult:
        hit = self._require_product(product_id)
        label = (name or "").strip()
        if not label:
            raise ValueError("Product name cannot be empty.")
        updated = hit.model_copy(
            update={
                "name": label,
                "category": normalize_category(category),
                "price": max(0, round(price or 0)),
                "sku": _clean(sku),
                "barcode": _clean(barcode),
            }
        )
        if updated == hit:
            return MutationResult(ok=True, value=hit)
        return await self._save_product(updated, hit, "Saving the product")

    async def toggle_product_active(self, product_id: str) -> MutationResult:
        hit = self._require_product(product_id)
        updated = hit.model_copy(update={"active": not hit.active})
        return await self._save_product(updated, hit, "Changing the product status")

    async def toggle_product_make_enabled(self, product_id: str) -> MutationResult:
        hit = self._require_product(product_id)
        updated = hit.model_copy(update={"make_enabled": not hit.make_enabled})
        return await self._save_product(updated, hit, "Changing the production flag")

    async def _save_product(
        self, product: Product, previous: Product | None, description: str, *, seed: bool = False
    ) -> MutationResult:
        category = product.category
        new_category = bool(category) and category not in self.snapshot.category_names

        def apply(snapshot: Snapshot) -> Snapshot:
            snapshot = put_product(snapshot, product)
            return put_categories(snapshot, [category]) if new_category else snapshot

        def revert(snapshot: Snapshot) -> Snapshot:
            if previous is None:
                snapshot = remove_product(snapshot, product.id)
            else:
                snapshot = put_product(snapshot, previous)
            return remove_category(snapshot, category) if new_category else snapshot

        async def commit() -> Callable[[Snapshot], Snapshot] | None:
            if new_category:
                await self._remote.upsert(EntityType.CATEGORY, Category(name=category))
            await self._remote.upsert(EntityType.PRODUCT, product)
            if seed:
                return await self._seed_states(self.snapshot.store_ids, [product.id])
            return None

        return await self.executor.execute(
            Mutation(description=description, apply=apply, commit=commit, revert=revert, value=product)
        )

    async def delete_product(self, product_id: str) -> MutationResult:
        hit = self._require_product(product_id)
        # Quantities still waiting on a timer are saved before the delete goes out.
        await self.debouncer.flush_where(lambda key: key[1] == product_id)
        snapshot = self.snapshot
        inventory = [item for item in snapshot.inventory if item.product_id == product_id]
        states = [state for state in snapshot.store_product_states if state.product_id == product_id]

        def revert(snapshot: Snapshot) -> Snapshot:
            snapshot = put_product(snapshot, hit)
            for item in inventory:
                snapshot = put_inventory(snapshot, item)
            return put_states(snapshot, states)

        async def commit() -> None:
            await self._remote.delete(EntityType.PRODUCT, product_id)

        return await self.executor.execute(
            Mutation(
                description="Deleting the product",
                apply=lambda s: remove_product(s, product_id),
                commit=commit,
                revert=revert,
                value=hit,
            )
        )

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------
    def _store_fields(self, name: str, fields: dict[str, Any]) -> dict[str, Any]:
        label = (name or "").strip()
        if not label:
            raise ValueError("Store name cannot be empty.")
        values: dict[str, Any] = {"name": label}
        for key in _STORE_TEXT_FIELDS:
            values[key] = _clean(fields.get(key))
        commission = fields.get("commission_rate")
        values["commission_rate"] = None if commission is None else max(0.0, float(commission))
        target = fields.get("target_qty_override")
        values["target_qty_override"] = None if target is None else max(0, int(target))
        return values

    async def add_store(self, name: str, **fields: Any) -> MutationResult:
        store = Store(id=new_id("s"), **self._store_fields(name, fields))

        async def commit() -> Callable[[Snapshot], Snapshot] | None:
            await self._remote.upsert(EntityType.STORE, store)
            return await self._seed_states([store.id], self.snapshot.product_ids)

        return await self.executor.execute(
            Mutation(
                description="Adding the store",
                apply=lambda s: put_store(s, store),
                commit=commit,
                revert=lambda s: remove_store(s, store.id),
                value=store,
            )
        )

    async def update_store(self, store_id: str, name: str, **fields: Any) -> MutationResult:
        hit = self._require_store(store_id)
        updated = hit.model_copy(update=self._store_fields(name, fields))
        if updated == hit:
            return MutationResult(ok=True, value=hit)

        async def commit() -> None:
            await self._remote.upsert(EntityType.STORE, updated)

        return await self.executor.execute(
            Mutation(
                description="Saving the store",
                apply=lambda s: put_store(s, updated),
                commit=commit,
                revert=lambda s: put_store(s, hit),
                value=updated,
            )
        )

    async def delete_store(self, store_id: str) -> MutationResult:
        hit = self._require_store(store_id)
        await self.debouncer.flush_where(lambda key: key[0] == store_id)
        snapshot = self.snapshot
        inventory = [item for item in snapshot.inventory if item.store_id == store_id]
        states = [state for state in snapshot.store_product_states if state.store_id == store_id]

        def revert(snapshot: Snapshot) -> Snapshot:
            snapshot = put_store(snapshot, hit)
            for item in inventory:
                snapshot = put_inventory(snapshot, item)
            return put_states(snapshot, states)

        async def commit() -> None:
            await self._remote.delete(EntityType.STORE, store_id)

        return await self.executor.execute(
            Mutation(
                description="Deleting the store",
                apply=lambda s: remove_store(s, store_id),
                commit=commit,
                revert=revert,
                value=hit,
            )
        )

    # ------------------------------------------------------------------
    # Store x product enablement
    # ------------------------------------------------------------------
    async def set_product_enabled(self, store_id: str, product_id: str, enabled: bool) -> MutationResult:
        self._require_store(store_id)
        self._require_product(product_id)
        previous = self.snapshot.find_state(store_id, product_id)
        state = StoreProductState(store_id=store_id, product_id=product_id, enabled=enabled)

        def revert(snapshot: Snapshot) -> Snapshot:
            if previous is None:
                return drop_states(snapshot, [state.key])
            return put_states(snapshot, [previous])

        async def commit() -> None:
            await self._remote.upsert(EntityType.STORE_PRODUCT_STATE, state)

        result = await self.executor.execute(
            Mutation(
                description="Saving the ON/OFF setting",
                apply=lambda s: put_states(s, [state]),
                commit=commit,
                revert=revert,
                value=state,
            )
        )
        if result.ok:
            self._schedule_refresh()
        return result

    async def set_all_products_enabled(self, store_id: str, enabled: bool) -> MutationResult:
        """Switch every product of one store in a single batched write."""

        self._require_store(store_id)
        snapshot = self.snapshot
        previous = [s for s in snapshot.store_product_states if s.store_id == store_id]
        states = [
            StoreProductState(store_id=store_id, product_id=product_id, enabled=enabled)
            for product_id in snapshot.product_ids
        ]

        def replace_for_store(snapshot: Snapshot, rows: list[StoreProductState]) -> Snapshot:
            current = [s.key for s in snapshot.store_product_states if s.store_id == store_id]
            return put_states(drop_states(snapshot, current), rows)

        async def commit() -> None:
            await self._remote.upsert_many(EntityType.STORE_PRODUCT_STATE, states)

        result = await self.executor.execute(
            Mutation(
                description="Saving the bulk ON/OFF change",
                apply=lambda s: replace_for_store(s, states),
                commit=commit,
                revert=lambda s: replace_for_store(s, previous),
                value=len(states),
            )
        )
        if result.ok:
            self._schedule_refresh()
        return result

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    def set_on_hand(self, store_id: str, product_id: str, on_hand_qty: int) -> InventoryItem:
        """Show the new quantity now and persist it once typing pauses."""

        if isinstance(on_hand_qty, bool) or not isinstance(on_hand_qty, int) or on_hand_qty < 0:
            raise ValueError("On-hand quantity must be a non-negative integer.")
        self._require_store(store_id)
        self._require_product(product_id)
        key = (store_id, product_id)
        item = InventoryItem(
            store_id=store_id, product_id=product_id, on_hand_qty=on_hand_qty, updated_at=utcnow()
        )

        async def commit() -> None:
            await self._remote.upsert(EntityType.INVENTORY, item)

        def restore(snapshot: Snapshot, previous: InventoryItem | None) -> Snapshot:
            if previous is None:
                return drop_inventory(snapshot, key)
            return put_inventory(snapshot, previous)

        self.debouncer.submit(
            key,
            DebouncedEdit(
                description="Saving the stock quantity",
                apply=lambda s: put_inventory(s, item),
                commit=commit,
                capture=lambda s: s.find_inventory(store_id, product_id),
                restore=restore,
            ),
        )
        return item

    async def flush_pending_edits(self) -> None:
        await self.debouncer.flush()

    async def apply_sales(self, store_id: str, lines: Iterable[SalesLine]) -> MutationResult:
        """Take settled sales off one store's stock in a single batched write."""

        self._require_store(store_id)
        lines = list(lines)
        product_ids = {line.product_id for line in lines}
        for product_id in product_ids:
            self._require_product(product_id)
        await self.debouncer.flush_where(lambda key: key[0] == store_id and key[1] in product_ids)
        snapshot = self.snapshot
        items = planner.inventory_after_sales(snapshot, store_id, lines)
        if not items:
            return MutationResult(ok=True, value=[])
        previous = {item.key: snapshot.find_inventory(*item.key) for item in items}

        def apply(snapshot: Snapshot) -> Snapshot:
            for item in items:
                snapshot = put_inventory(snapshot, item)
            return snapshot

        def revert(snapshot: Snapshot) -> Snapshot:
            for key, item in previous.items():
                if item is None:
                    snapshot = drop_inventory(snapshot, key)
                else:
                    snapshot = put_inventory(snapshot, item)
            return snapshot

        async def commit() -> None:
            await self._remote.upsert_many(EntityType.INVENTORY, items)

        result = await self.executor.execute(
            Mutation(
                description="Applying the sales settlement",
                apply=apply,
                commit=commit,
                revert=revert,
                value=items,
            )
        )
        if result.ok:
            logger.info("Settled sales for store %s: %d products", store_id, len(items))
        return result

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def update_planning(self, *, default_target_qty: int, low_stock_threshold: int) -> PlanningConfig:
        self.planning = PlanningConfig(
            default_target_qty=default_target_qty, low_stock_threshold=low_stock_threshold
        )
        logger.info(
            "Planning config set to target=%d threshold=%d", default_target_qty, low_stock_threshold
        )
        return self.planning

    def plan_replenishment(
        self, scope: str = ALL_STORES, *, category: str | None = None
    ) -> list[ReplenishmentLine] | list[AggregateReplenishmentLine]:
        return planner.plan_replenishment(self.snapshot, self.planning, scope, category=category)

    def stock_rows(
        self, store_id: str = ALL_STORES, *, category: str | None = None, only_low_stock: bool = False
    ) -> list[StockRow]:
        return planner.stock_rows(
            self.snapshot,
            self.planning,
            store_id=store_id,
            category=category,
            only_low_stock=only_low_stock,
        )

    def summary(self, scope: str = ALL_STORES, *, category: str | None = None) -> PlanSummary:
        return planner.summarize(self.snapshot, self.planning, scope, category=category)

    def export_plan_csv(self, scope: str = ALL_STORES, *, category: str | None = None) -> str:
        return planner.plan_to_csv(self.snapshot, self.plan_replenishment(scope, category=category))

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------
    async def import_product_batch(
        self, rows: Iterable[ImportRow], strategy: MergeStrategy | str | None = None
    ) -> ImportResult | ImportConflictReport:
        """Create and merge products; conflicting batches wait for a strategy."""

        chosen = MergeStrategy(strategy) if strategy is not None else None
        unique = dedupe_rows(rows)
        if not unique:
            raise ValueError("No products to import; rows without a name are ignored.")
        snapshot = self.snapshot
        conflicts = detect_conflicts(unique, snapshot.products)
        if conflicts and chosen is None:
            logger.info("Import held: %d conflicting fields", len(conflicts))
            return ImportConflictReport(rows=unique, conflicts=conflicts)

        chosen = chosen or MergeStrategy.OVERWRITE
        plan = plan_import(unique, snapshot, chosen)
        result = ImportResult(
            strategy=chosen.value,
            created=len(plan.created),
            updated=len(plan.updated),
            unchanged=plan.unchanged,
            new_categories=plan.new_categories,
            warnings=suspicious_identifier_warnings(unique),
        )
        if not plan.changed:
            return result

        previous = [snapshot.find_product(product.id) for product in plan.updated]

        def apply(snapshot: Snapshot) -> Snapshot:
            snapshot = put_categories(snapshot, plan.new_categories)
            return put_products(snapshot, plan.changed)

        def revert(snapshot: Snapshot) -> Snapshot:
            for product in plan.created:
                snapshot = remove_product(snapshot, product.id)
            snapshot = put_products(snapshot, [p for p in previous if p is not None])
            for name in plan.new_categories:
                snapshot = remove_category(snapshot, name)
            return snapshot

        async def commit() -> Callable[[Snapshot], Snapshot] | None:
            # Categories first so no product references a label the store lacks.
            if plan.new_categories:
                await self._remote.upsert_many(
                    EntityType.CATEGORY, [Category(name=name) for name in plan.new_categories]
                )
            await self._remote.upsert_many(EntityType.PRODUCT, plan.changed)
            if plan.created:
                return await self._seed_states(
                    self.snapshot.store_ids, [product.id for product in plan.created]
                )
            return None

        outcome = await self.executor.execute(
            Mutation(description="Importing products", apply=apply, commit=commit, revert=revert)
        )
        if not outcome.ok:
            return result.model_copy(update={"status": "failed", "message": outcome.message})
        logger.info(
            "Imported products: %d created, %d updated (%s)",
            result.created,
            result.updated,
            chosen.value,
        )
        return result

    async def import_product_csv(
        self, text: str, strategy: MergeStrategy | str | None = None
    ) -> ImportResult | ImportConflictReport:
        return await self.import_product_batch(parse_product_csv(text), strategy)

    async def aclose(self) -> None:
        """Cancel the trailing refresh and persist edits still waiting on a timer."""

        self.refresher.cancel_scheduled()
        await self.debouncer.flush()
        await self.refresher.wait_idle()


__all__ = ["PlannerService"]
