"""FastAPI router configuration."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from . import schemas
from .config import Settings, get_settings
from .database import create_engine, create_session_factory
from .errors import EntityNotFoundError, NotAuthenticatedError, PlannerError
from .management import init_database
from .mutations import MutationResult
from .planner import ALL_STORES
from .remote_store import SqlRemoteStore
from .service import PlannerService

logger = logging.getLogger(__name__)

router = APIRouter()


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def get_service(request: Request) -> PlannerService:
    """Dependency returning the :class:`PlannerService` bound to the app."""

    return request.app.state.service


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NotAuthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.user_message) from exc
    except PlannerError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.user_message) from exc


def ensure_committed(result: MutationResult) -> Any:
    """Return the mutation value or raise the HTTP error matching its failure."""

    if result.ok:
        return result.value
    if isinstance(result.error, NotAuthenticatedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=result.message)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.message)


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


@router.get("/snapshot", response_model=schemas.Snapshot, tags=["system"])
async def read_snapshot(service: PlannerService = Depends(get_service)) -> schemas.Snapshot:
    return service.snapshot


@router.post("/refresh", response_model=schemas.Snapshot, tags=["system"])
async def refresh_snapshot(service: PlannerService = Depends(get_service)) -> schemas.Snapshot:
    with translate_errors():
        return await service.refresh()


@router.post("/categories", response_model=schemas.Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: schemas.CategoryCreate, service: PlannerService = Depends(get_service)
) -> schemas.Category:
    with translate_errors():
        name = ensure_committed(await service.add_category(payload.name))
    return schemas.Category(name=name)


@router.delete("/categories/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(name: str, service: PlannerService = Depends(get_service)) -> None:
    with translate_errors():
        ensure_committed(await service.delete_category(name))


@router.post("/products", response_model=schemas.Product, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: schemas.ProductCreate, service: PlannerService = Depends(get_service)
) -> schemas.Product:
    with translate_errors():
        result = await service.add_product(**payload.model_dump())
    return ensure_committed(result)


@router.put("/products/{product_id}", response_model=schemas.Product)
async def update_product(
    product_id: str,
    payload: schemas.ProductUpdate,
    service: PlannerService = Depends(get_service),
) -> schemas.Product:
    with translate_errors():
        result = await service.update_product(product_id, **payload.model_dump())
    return ensure_committed(result)


@router.post("/products/{product_id}/toggle-active", response_model=schemas.Product)
async def toggle_product_active(
    product_id: str, service: PlannerService = Depends(get_service)
) -> schemas.Product:
    with translate_errors():
        result = await service.toggle_product_active(product_id)
    return ensure_committed(result)


@router.post("/products/{product_id}/toggle-make", response_model=schemas.Product)
async def toggle_product_make(
    product_id: str, service: PlannerService = Depends(get_service)
) -> schemas.Product:
    with translate_errors():
        result = await service.toggle_product_make_enabled(product_id)
    return ensure_committed(result)


@router.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(product_id: str, service: PlannerService = Depends(get_service)) -> None:
    with translate_errors():
        result = await service.delete_product(product_id)
    ensure_committed(result)


@router.post("/stores", response_model=schemas.Store, status_code=status.HTTP_201_CREATED)
async def create_store(
    payload: schemas.StoreCreate, service: PlannerService = Depends(get_service)
) -> schemas.Store:
    with translate_errors():
        result = await service.add_store(**payload.model_dump())
    return ensure_committed(result)


@router.put("/stores/{store_id}", response_model=schemas.Store)
async def update_store(
    store_id: str,
    payload: schemas.StoreUpdate,
    service: PlannerService = Depends(get_service),
) -> schemas.Store:
    with translate_errors():
        result = await service.update_store(store_id, **payload.model_dump())
    return ensure_committed(result)


@router.delete("/stores/{store_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_store(store_id: str, service: PlannerService = Depends(get_service)) -> None:
    with translate_errors():
        result = await service.delete_store(store_id)
    ensure_committed(result)


@router.put("/stores/{store_id}/products/{product_id}", response_model=schemas.StoreProductState)
async def set_product_enabled(
    store_id: str,
    product_id: str,
    payload: schemas.EnabledUpdate,
    service: PlannerService = Depends(get_service),
) -> schemas.StoreProductState:
    with translate_errors():
        result = await service.set_product_enabled(store_id, product_id, payload.enabled)
    return ensure_committed(result)


@router.put("/stores/{store_id}/products")
async def set_all_products_enabled(
    store_id: str,
    payload: schemas.EnabledUpdate,
    service: PlannerService = Depends(get_service),
) -> dict[str, int]:
    with translate_errors():
        result = await service.set_all_products_enabled(store_id, payload.enabled)
    return {"updated": ensure_committed(result)}


@router.put(
    "/inventory/{store_id}/{product_id}",
    response_model=schemas.InventoryItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def set_on_hand(
    store_id: str,
    product_id: str,
    payload: schemas.QuantityUpdate,
    service: PlannerService = Depends(get_service),
) -> schemas.InventoryItem:
    with translate_errors():
        return service.set_on_hand(store_id, product_id, payload.on_hand_qty)


@router.post("/stores/{store_id}/sales", response_model=list[schemas.InventoryItem])
async def apply_sales(
    store_id: str,
    payload: schemas.SalesSettlement,
    service: PlannerService = Depends(get_service),
) -> list[schemas.InventoryItem]:
    with translate_errors():
        result = await service.apply_sales(store_id, payload.lines)
    return ensure_committed(result)


@router.get("/replenishment", response_model=None)
async def read_replenishment(
    store_id: str = ALL_STORES,
    category: str | None = None,
    format: Literal["json", "csv"] = "json",
    service: PlannerService = Depends(get_service),
) -> Any:
    with translate_errors():
        if format == "csv":
            return Response(
                content=service.export_plan_csv(store_id, category=category),
                media_type="text/csv",
            )
        lines = service.plan_replenishment(store_id, category=category)
    return [line.model_dump(mode="json") for line in lines]


@router.get("/stock", response_model=list[schemas.StockRow])
async def read_stock(
    store_id: str = ALL_STORES,
    category: str | None = None,
    low_stock_only: bool = False,
    service: PlannerService = Depends(get_service),
) -> list[schemas.StockRow]:
    with translate_errors():
        return service.stock_rows(store_id, category=category, only_low_stock=low_stock_only)


@router.get("/summary", response_model=schemas.PlanSummary)
async def read_summary(
    store_id: str = ALL_STORES,
    category: str | None = None,
    service: PlannerService = Depends(get_service),
) -> schemas.PlanSummary:
    with translate_errors():
        return service.summary(store_id, category=category)


@router.get("/settings/planning", response_model=schemas.PlanningSettings)
async def read_planning(service: PlannerService = Depends(get_service)) -> schemas.PlanningSettings:
    return schemas.PlanningSettings(
        default_target_qty=service.planning.default_target_qty,
        low_stock_threshold=service.planning.low_stock_threshold,
    )


@router.put("/settings/planning", response_model=schemas.PlanningSettings)
async def update_planning(
    payload: schemas.PlanningSettings, service: PlannerService = Depends(get_service)
) -> schemas.PlanningSettings:
    with translate_errors():
        service.update_planning(**payload.model_dump())
    return payload


def _import_response(outcome: schemas.ImportResult | schemas.ImportConflictReport) -> Any:
    if isinstance(outcome, schemas.ImportConflictReport):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT, content=outcome.model_dump(mode="json")
        )
    if outcome.status == "failed":
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY, content=outcome.model_dump(mode="json")
        )
    return outcome


@router.post("/imports/products", response_model=None)
async def import_products(
    payload: schemas.ProductImportRequest, service: PlannerService = Depends(get_service)
) -> Any:
    with translate_errors():
        outcome = await service.import_product_batch(payload.rows, payload.strategy)
    return _import_response(outcome)


@router.post("/imports/products/csv", response_model=None)
async def import_products_csv(
    request: Request,
    strategy: Literal["overwrite", "safe"] | None = None,
    service: PlannerService = Depends(get_service),
) -> Any:
    body = await request.body()
    with translate_errors():
        try:
            text = body.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValueError("CSV upload must be UTF-8 encoded.") from exc
        outcome = await service.import_product_csv(text, strategy)
    return _import_response(outcome)


def create_app(settings: Settings | None = None, *, service: PlannerService | None = None) -> FastAPI:
    settings = settings or get_settings()
    engine = None
    if service is None:
        engine = create_engine(settings)
        remote = SqlRemoteStore(create_session_factory(engine), settings.account_id)
        service = PlannerService.from_settings(remote, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if engine is not None:
            await init_database(engine)
        try:
            await service.refresh()
        except PlannerError:
            logger.warning("Initial snapshot load failed, starting empty", exc_info=True)
        yield
        await service.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.service = service
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app", "get_service", "provide_settings"]
