"""Bulk product import: CSV adapter, conflict detection and merge policies."""
from __future__ import annotations

import csv
import enum
import re
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from io import StringIO
from typing import Any

from .schemas import FieldConflict, ImportRow, Product, Snapshot, utcnow

CONFLICT_FIELDS = ("active", "price", "sku", "barcode")

_FALSE_VALUES = {"false", "f", "0", "n", "no", "off", "비활성"}
_SPREADSHEET_NUMBER = re.compile(r"e\+?\d+", re.IGNORECASE)

_CSV_FIELD_ALIASES: dict[str, set[str]] = {
    "category": {"category", "카테고리"},
    "name": {"name", "제품명"},
    "active": {"active", "활성여부"},
    "price": {"price", "가격"},
    "sku": {"sku"},
    "barcode": {"barcode", "바코드"},
}


UNCATEGORIZED_LABELS = {"", "미분류", "uncategorized"}


class MergeStrategy(str, enum.Enum):
    OVERWRITE = "overwrite"
    SAFE = "safe"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def normalize_category(value: str | None) -> str | None:
    text = (value or "").strip()
    if text.lower() in UNCATEGORIZED_LABELS:
        return None
    return text


def product_key(category: str | None, name: str | None) -> str:
    return f"{normalize_category(category) or ''}||{(name or '').strip()}"


def _provided(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _normalize_csv_key(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\ufeff", "").strip().lower()


def _resolve_csv_field(normalized: dict[str, Any], canonical: str) -> str:
    for alias in _CSV_FIELD_ALIASES[canonical]:
        if alias in normalized:
            return str(normalized[alias] or "")
    return ""


def parse_bool_like(value: str | None) -> bool:
    text = (value or "").strip().lower()
    if text in _FALSE_VALUES:
        return False
    # Empty and unrecognised values keep the product active.
    return True


def parse_price_like(value: str | None) -> int | None:
    text = (value or "").strip().replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return max(0, round(number))


def parse_product_csv(text: str) -> list[ImportRow]:
    """Parse ``category,name,active,price,sku,barcode`` CSV text into rows.

    ``name`` and ``active`` columns are required; rows without a name are dropped.
    """

    reader = csv.DictReader(StringIO(text.lstrip("\ufeff")))
    if reader.fieldnames is None:
        raise ValueError("Missing header row")
    header_keys = {_normalize_csv_key(name) for name in reader.fieldnames}
    for required in ("name", "active"):
        if not header_keys & _CSV_FIELD_ALIASES[required]:
            raise ValueError(
                'CSV header must include "name" and "active" '
                "(recommended: category,name,active,price,sku,barcode)"
            )

    rows: list[ImportRow] = []
    for row in reader:
        normalized = {_normalize_csv_key(key): value for key, value in row.items() if key}
        name = _resolve_csv_field(normalized, "name").strip()
        if not name:
            continue
        rows.append(
            ImportRow(
                category=_resolve_csv_field(normalized, "category"),
                name=name,
                active=parse_bool_like(_resolve_csv_field(normalized, "active")),
                price=parse_price_like(_resolve_csv_field(normalized, "price")),
                sku=_resolve_csv_field(normalized, "sku"),
                barcode=_resolve_csv_field(normalized, "barcode"),
            )
        )
    return rows


def suspicious_identifier_warnings(rows: Iterable[ImportRow]) -> list[str]:
    """Flag SKU/barcode values a spreadsheet probably turned into numbers."""

    warnings = []
    for row in rows:
        for field_name in ("sku", "barcode"):
            value = getattr(row, field_name) or ""
            if _SPREADSHEET_NUMBER.search(value) or "." in value:
                warnings.append(
                    f"{row.name}: {field_name} {value!r} looks like a number converted by a "
                    "spreadsheet; save the column as text and upload again."
                )
    return warnings


def dedupe_rows(rows: Iterable[ImportRow]) -> list[ImportRow]:
    """Drop nameless rows; the last row wins for a repeated (category, name)."""

    by_key: dict[str, ImportRow] = {}
    for row in rows:
        if not row.name:
            continue
        by_key[product_key(row.category, row.name)] = row
    return list(by_key.values())


def index_products(products: Iterable[Product]) -> dict[str, Product]:
    return {product_key(p.category, p.name): p for p in products}


def detect_conflicts(rows: Sequence[ImportRow], products: Iterable[Product]) -> list[FieldConflict]:
    """Fields where both the existing and the incoming value are set and differ."""

    existing = index_products(products)
    conflicts = []
    for row in rows:
        key = product_key(row.category, row.name)
        hit = existing.get(key)
        if hit is None:
            continue
        for field_name in CONFLICT_FIELDS:
            old, new = getattr(hit, field_name), getattr(row, field_name)
            if _provided(old) and _provided(new) and str(old).strip() != str(new).strip():
                conflicts.append(
                    FieldConflict(key=key, name=row.name, field=field_name, existing=old, incoming=new)
                )
    return conflicts


def merge_product(existing: Product, row: ImportRow, strategy: MergeStrategy) -> Product:
    """Combine an existing product with an incoming row.

    ``overwrite`` lets every provided incoming value win; ``safe`` only fills
    fields that are empty on the existing product. An empty incoming value never
    replaces anything under either policy.
    """

    update = {}
    for field_name in CONFLICT_FIELDS:
        old, new = getattr(existing, field_name), getattr(row, field_name)
        if not _provided(new):
            continue
        if strategy is MergeStrategy.OVERWRITE or not _provided(old):
            update[field_name] = new
    return existing.model_copy(update=update)


@dataclass
class ImportPlan:
    created: list[Product] = field(default_factory=list)
    updated: list[Product] = field(default_factory=list)
    unchanged: int = 0
    new_categories: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[Product]:
        return [*self.created, *self.updated]


def plan_import(
    rows: Sequence[ImportRow],
    snapshot: Snapshot,
    strategy: MergeStrategy,
    *,
    now: Callable[[], datetime] = utcnow,
    id_factory: Callable[[str], str] = new_id,
) -> ImportPlan:
    existing = index_products(snapshot.products)
    known_categories = set(snapshot.category_names)
    plan = ImportPlan()
    for row in rows:
        key = product_key(row.category, row.name)
        hit = existing.get(key)
        if hit is None:
            category = normalize_category(row.category)
            product = Product(
                id=id_factory("p"),
                name=row.name,
                category=category,
                active=row.active,
                make_enabled=True,
                price=row.price if row.price is not None else 0,
                sku=row.sku,
                barcode=row.barcode,
                created_at=now(),
            )
            existing[key] = product
            plan.created.append(product)
            if category and category not in known_categories:
                known_categories.add(category)
                plan.new_categories.append(category)
            continue
        merged = merge_product(hit, row, strategy)
        if merged == hit:
            plan.unchanged += 1
        else:
            plan.updated.append(merged)
    return plan


__all__ = [
    "CONFLICT_FIELDS",
    "MergeStrategy",
    "ImportPlan",
    "UNCATEGORIZED_LABELS",
    "new_id",
    "normalize_category",
    "product_key",
    "parse_bool_like",
    "parse_price_like",
    "parse_product_csv",
    "suspicious_identifier_warnings",
    "dedupe_rows",
    "index_products",
    "detect_conflicts",
    "merge_product",
    "plan_import",
]
