"""Remote store capability and its SQLAlchemy implementation."""
from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Protocol, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import NetworkTransientError, NotAuthenticatedError, RemoteRejectedError
from .models import (
    CategoryRecord,
    InventoryRecord,
    ProductRecord,
    StoreProductStateRecord,
    StoreRecord,
)
from .schemas import (
    Category,
    Entity,
    InventoryItem,
    PairKey,
    Product,
    Snapshot,
    Store,
    StoreProductState,
)

logger = logging.getLogger(__name__)

RecordKey = Union[str, PairKey]


class EntityType(str, enum.Enum):
    PRODUCT = "product"
    STORE = "store"
    INVENTORY = "inventory"
    STORE_PRODUCT_STATE = "store_product_state"
    CATEGORY = "category"


class RemoteStore(Protocol):
    """Read/write capability of the backing service for one account."""

    async def load_all(self) -> Snapshot: ...

    async def load_store_product_states(self) -> tuple[StoreProductState, ...]: ...

    async def upsert(self, entity_type: EntityType, record: Entity) -> None: ...

    async def upsert_many(self, entity_type: EntityType, records: Sequence[Entity]) -> None: ...

    async def delete(self, entity_type: EntityType, key: RecordKey) -> None: ...


_RECORD_CLASSES: dict[EntityType, Any] = {
    EntityType.PRODUCT: ProductRecord,
    EntityType.STORE: StoreRecord,
    EntityType.INVENTORY: InventoryRecord,
    EntityType.STORE_PRODUCT_STATE: StoreProductStateRecord,
    EntityType.CATEGORY: CategoryRecord,
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _with_utc(row: Any, *fields: str) -> dict[str, Any]:
    data = {column: getattr(row, column) for column in row.__mapper__.columns.keys()}
    for name in fields:
        data[name] = _as_utc(data[name])
    data.pop("account_id", None)
    return data


class SqlRemoteStore:
    """:class:`RemoteStore` backed by a SQLAlchemy async session factory."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], account_id: str | None
    ) -> None:
        self._session_factory = session_factory
        self._account_id = account_id

    @property
    def account_id(self) -> str:
        if not self._account_id:
            raise NotAuthenticatedError("No account is attached to this session")
        return self._account_id

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        account_id = self.account_id
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError as exc:
            logger.warning("Backing store rejected write for account %s", account_id)
            raise RemoteRejectedError(str(exc.orig)) from exc
        except (OperationalError, InterfaceError) as exc:
            raise NetworkTransientError(str(exc.orig)) from exc
        except DBAPIError as exc:
            raise RemoteRejectedError(str(exc.orig)) from exc

    async def load_all(self) -> Snapshot:
        account_id = self.account_id
        async with self._session() as session:
            products = await session.execute(
                select(ProductRecord)
                .where(ProductRecord.account_id == account_id)
                .order_by(ProductRecord.created_at, ProductRecord.id)
            )
            stores = await session.execute(
                select(StoreRecord)
                .where(StoreRecord.account_id == account_id)
                .order_by(StoreRecord.created_at, StoreRecord.id)
            )
            inventory = await session.execute(
                select(InventoryRecord).where(InventoryRecord.account_id == account_id)
            )
            categories = await session.execute(
                select(CategoryRecord)
                .where(CategoryRecord.account_id == account_id)
                .order_by(CategoryRecord.name)
            )
            states = await self._select_states(session)
            snapshot = Snapshot(
                products=tuple(
                    Product(**_with_utc(row, "created_at")) for row in products.scalars()
                ),
                stores=tuple(Store(**_with_utc(row, "created_at")) for row in stores.scalars()),
                inventory=tuple(
                    InventoryItem(**_with_utc(row, "updated_at")) for row in inventory.scalars()
                ),
                store_product_states=states,
                categories=tuple(Category(name=row.name) for row in categories.scalars()),
            )
        logger.debug(
            "Loaded snapshot for %s: %d products, %d stores, %d inventory rows",
            account_id,
            len(snapshot.products),
            len(snapshot.stores),
            len(snapshot.inventory),
        )
        return snapshot

    async def _select_states(self, session: AsyncSession) -> tuple[StoreProductState, ...]:
        result = await session.execute(
            select(StoreProductStateRecord).where(
                StoreProductStateRecord.account_id == self.account_id
            )
        )
        return tuple(
            StoreProductState(
                store_id=row.store_id, product_id=row.product_id, enabled=row.enabled
            )
            for row in result.scalars()
        )

    async def load_store_product_states(self) -> tuple[StoreProductState, ...]:
        async with self._session() as session:
            return await self._select_states(session)

    async def upsert(self, entity_type: EntityType, record: Entity) -> None:
        await self.upsert_many(entity_type, [record])

    async def upsert_many(self, entity_type: EntityType, records: Sequence[Entity]) -> None:
        if not records:
            return
        record_cls = _RECORD_CLASSES[entity_type]
        account_id = self.account_id
        async with self._session() as session:
            for record in records:
                await session.merge(record_cls(account_id=account_id, **record.model_dump()))
            await session.commit()

    async def delete(self, entity_type: EntityType, key: RecordKey) -> None:
        account_id = self.account_id
        async with self._session() as session:
            for stmt in self._delete_statements(entity_type, key, account_id):
                await session.execute(stmt)
            await session.commit()

    @staticmethod
    def _delete_statements(entity_type: EntityType, key: RecordKey, account_id: str) -> list[Any]:
        if entity_type in (EntityType.INVENTORY, EntityType.STORE_PRODUCT_STATE):
            record_cls = _RECORD_CLASSES[entity_type]
            store_id, product_id = key
            return [
                delete(record_cls).where(
                    record_cls.account_id == account_id,
                    record_cls.store_id == store_id,
                    record_cls.product_id == product_id,
                )
            ]
        if entity_type is EntityType.CATEGORY:
            return [
                delete(CategoryRecord).where(
                    CategoryRecord.account_id == account_id, CategoryRecord.name == key
                )
            ]
        # Stores and products cascade to the pair tables.
        if entity_type is EntityType.STORE:
            owner_column, record_cls = "store_id", StoreRecord
        else:
            owner_column, record_cls = "product_id", ProductRecord
        statements: list[Any] = [
            delete(pair_cls).where(
                pair_cls.account_id == account_id, getattr(pair_cls, owner_column) == key
            )
            for pair_cls in (InventoryRecord, StoreProductStateRecord)
        ]
        statements.append(
            delete(record_cls).where(record_cls.account_id == account_id, record_cls.id == key)
        )
        return statements


__all__ = ["EntityType", "RecordKey", "RemoteStore", "SqlRemoteStore"]
