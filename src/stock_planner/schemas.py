"""Pydantic schemas for the entity model, planner output and API payloads."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PairKey = tuple[str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """Immutable record held by a :class:`Snapshot`."""

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Product(Entity):
    id: str
    name: str
    category: str | None = None
    active: bool = True
    make_enabled: bool = Field(True, description="Excluded from production planning when false.")
    price: int | None = None
    sku: str | None = None
    barcode: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Store(Entity):
    id: str
    name: str
    commission_rate: float | None = Field(None, ge=0, description="Commission in percent, e.g. 25.")
    target_qty_override: int | None = Field(None, ge=0)
    contact_name: str | None = None
    phone: str | None = None
    address: str | None = None
    memo: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class InventoryItem(Entity):
    store_id: str
    product_id: str
    on_hand_qty: int = Field(0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> PairKey:
        return (self.store_id, self.product_id)


class StoreProductState(Entity):
    store_id: str
    product_id: str
    enabled: bool = True

    @property
    def key(self) -> PairKey:
        return (self.store_id, self.product_id)


class Category(Entity):
    name: str


class Snapshot(Entity):
    """Everything one account owns, as last seen by this session."""

    products: tuple[Product, ...] = ()
    stores: tuple[Store, ...] = ()
    inventory: tuple[InventoryItem, ...] = ()
    store_product_states: tuple[StoreProductState, ...] = ()
    categories: tuple[Category, ...] = ()
    updated_at: int = 0

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    @property
    def store_ids(self) -> list[str]:
        return [store.id for store in self.stores]

    @property
    def product_ids(self) -> list[str]:
        return [product.id for product in self.products]

    @property
    def category_names(self) -> list[str]:
        return [category.name for category in self.categories]

    def find_product(self, product_id: str) -> Product | None:
        return next((p for p in self.products if p.id == product_id), None)

    def find_store(self, store_id: str) -> Store | None:
        return next((s for s in self.stores if s.id == store_id), None)

    def find_inventory(self, store_id: str, product_id: str) -> InventoryItem | None:
        key = (store_id, product_id)
        return next((item for item in self.inventory if item.key == key), None)

    def find_state(self, store_id: str, product_id: str) -> StoreProductState | None:
        key = (store_id, product_id)
        return next((state for state in self.store_product_states if state.key == key), None)

    def state_keys(self) -> set[PairKey]:
        return {state.key for state in self.store_product_states}


class StockRow(BaseModel):
    store_id: str
    store_name: str
    product_id: str
    product_name: str
    category: str | None = None
    on_hand_qty: int
    low_stock: bool


class ReplenishmentLine(BaseModel):
    store_id: str
    product_id: str
    product_name: str
    category: str | None = None
    on_hand_qty: int
    target_qty: int
    need: int


class AggregateReplenishmentLine(BaseModel):
    product_id: str
    product_name: str
    category: str | None = None
    total_need: int
    store_needs: dict[str, int] = Field(default_factory=dict)


class PlanSummary(BaseModel):
    store_count: int
    low_stock_count: int
    total_need: int
    need_product_count: int
    target_qty: int
    target_override_active: bool = False


class ImportRow(BaseModel):
    """One incoming product row; ``None`` means the column was left empty."""

    category: str = ""
    name: str
    active: bool = True
    price: int | None = Field(None, ge=0)
    sku: str | None = None
    barcode: str | None = None

    @field_validator("category", "name", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("sku", "barcode", mode="before")
    @classmethod
    def _empty_as_none(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class FieldConflict(BaseModel):
    key: str
    name: str
    field: Literal["active", "price", "sku", "barcode"]
    existing: bool | int | str | None
    incoming: bool | int | str | None


class ImportConflictReport(BaseModel):
    status: Literal["conflict"] = "conflict"
    rows: list[ImportRow]
    conflicts: list[FieldConflict]


class ImportResult(BaseModel):
    status: Literal["applied", "failed"] = "applied"
    strategy: Literal["overwrite", "safe"]
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    new_categories: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    message: str | None = None


class CategoryCreate(BaseModel):
    name: str


class ProductCreate(BaseModel):
    name: str
    category: str | None = None
    price: int | None = Field(None, ge=0)
    sku: str | None = None
    barcode: str | None = None


class ProductUpdate(BaseModel):
    name: str
    category: str | None = None
    price: float | None = None
    sku: str | None = None
    barcode: str | None = None


class StoreCreate(BaseModel):
    name: str
    commission_rate: float | None = Field(None, ge=0)
    target_qty_override: int | None = Field(None, ge=0)
    contact_name: str | None = None
    phone: str | None = None
    address: str | None = None
    memo: str | None = None


class StoreUpdate(StoreCreate):
    pass


class EnabledUpdate(BaseModel):
    enabled: bool


class QuantityUpdate(BaseModel):
    on_hand_qty: int = Field(..., ge=0)


class SalesLine(BaseModel):
    """Units of one product sold; negative when an earlier settlement over-counted."""

    product_id: str
    sold_qty: int


class SalesSettlement(BaseModel):
    lines: list[SalesLine] = Field(..., min_length=1)


class PlanningSettings(BaseModel):
    default_target_qty: int = Field(5, ge=0)
    low_stock_threshold: int = Field(2, ge=0)


class ProductImportRequest(BaseModel):
    rows: list[ImportRow]
    strategy: Literal["overwrite", "safe"] | None = None


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "PairKey",
    "Product",
    "Store",
    "InventoryItem",
    "StoreProductState",
    "Category",
    "Snapshot",
    "StockRow",
    "ReplenishmentLine",
    "AggregateReplenishmentLine",
    "PlanSummary",
    "ImportRow",
    "FieldConflict",
    "ImportConflictReport",
    "ImportResult",
    "CategoryCreate",
    "ProductCreate",
    "ProductUpdate",
    "StoreCreate",
    "StoreUpdate",
    "EnabledUpdate",
    "QuantityUpdate",
    "SalesLine",
    "SalesSettlement",
    "PlanningSettings",
    "ProductImportRequest",
    "HealthStatus",
]
