from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from stock_planner.api import create_app
from stock_planner.config import Settings
from stock_planner.database import create_session_factory
from stock_planner.management import init_database
from stock_planner.remote_store import EntityType, RecordKey, SqlRemoteStore
from stock_planner.schemas import Entity, Snapshot, StoreProductState
from stock_planner.service import PlannerService


class FlakyRemoteStore:
    """Wraps a real store, counting calls and failing on demand."""

    def __init__(self, inner: SqlRemoteStore) -> None:
        self.inner = inner
        self.calls: Counter[str] = Counter()
        self.writes: list[tuple[str, EntityType, Any]] = []
        self.load_delay = 0.0
        self.write_delay = 0.0
        self._failures: dict[str, list[Exception]] = defaultdict(list)

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        self._failures[method].extend([error] * times)

    def _check(self, method: str) -> None:
        self.calls[method] += 1
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    async def load_all(self) -> Snapshot:
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        self._check("load_all")
        return await self.inner.load_all()

    async def load_store_product_states(self) -> tuple[StoreProductState, ...]:
        self._check("load_store_product_states")
        return await self.inner.load_store_product_states()

    async def upsert(self, entity_type: EntityType, record: Entity) -> None:
        self._check("upsert")
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        await self.inner.upsert(entity_type, record)
        self.writes.append(("upsert", entity_type, record))

    async def upsert_many(self, entity_type: EntityType, records: Sequence[Entity]) -> None:
        self._check("upsert_many")
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        await self.inner.upsert_many(entity_type, records)
        self.writes.append(("upsert_many", entity_type, list(records)))

    async def delete(self, entity_type: EntityType, key: RecordKey) -> None:
        self._check("delete")
        await self.inner.delete(entity_type, key)
        self.writes.append(("delete", entity_type, key))


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        environment="test",
        app_name="Test Stock Planner",
        account_id="test",
    )


@pytest.fixture()
async def engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(settings.database_url, echo=False)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def sql_store(engine: AsyncEngine, settings: Settings) -> SqlRemoteStore:
    return SqlRemoteStore(create_session_factory(engine), settings.account_id)


@pytest.fixture()
def remote(sql_store: SqlRemoteStore) -> FlakyRemoteStore:
    return FlakyRemoteStore(sql_store)


@pytest.fixture()
async def service(remote: FlakyRemoteStore) -> AsyncIterator[PlannerService]:
    service = PlannerService(
        remote,
        quantity_debounce_seconds=0.05,
        retry_delay_seconds=0,
        refresh_after_failure=False,
        post_mutation_refresh_seconds=None,
    )
    yield service
    await service.aclose()


@pytest.fixture()
def app(settings: Settings, service: PlannerService) -> FastAPI:
    return create_app(settings, service=service)


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
