from __future__ import annotations

import csv
from io import StringIO

from httpx import AsyncClient

from stock_planner.errors import NotAuthenticatedError, RemoteRejectedError


async def _create_store(client: AsyncClient, name: str = "Mapo", **fields) -> dict:
    response = await client.post("/stores", json={"name": name, **fields})
    assert response.status_code == 201
    return response.json()


async def _create_product(client: AsyncClient, name: str, category: str | None = None) -> dict:
    response = await client.post("/products", json={"name": name, "category": category})
    assert response.status_code == 201
    return response.json()


async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "environment": "test"}


async def test_catalog_roundtrip_and_snapshot(client: AsyncClient) -> None:
    store = await _create_store(client, target_qty_override=8, memo="corner shop")
    product = await _create_product(client, "Candle", "Home")

    snapshot = (await client.get("/snapshot")).json()

    assert [s["id"] for s in snapshot["stores"]] == [store["id"]]
    assert snapshot["stores"][0]["memo"] == "corner shop"
    assert [p["id"] for p in snapshot["products"]] == [product["id"]]
    assert snapshot["categories"] == [{"name": "Home"}]
    assert snapshot["store_product_states"] == [
        {"store_id": store["id"], "product_id": product["id"], "enabled": True}
    ]

    refreshed = await client.post("/refresh")
    assert refreshed.status_code == 200
    assert refreshed.json()["store_product_states"] == snapshot["store_product_states"]


async def test_update_and_toggle_product(client: AsyncClient) -> None:
    product = await _create_product(client, "Candle")

    updated = await client.put(
        f"/products/{product['id']}",
        json={"name": "Tea Candle", "category": "Home", "price": 4500, "sku": "TC-1"},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Tea Candle"
    assert updated.json()["price"] == 4500

    toggled = await client.post(f"/products/{product['id']}/toggle-make")
    assert toggled.json()["make_enabled"] is False

    deleted = await client.delete(f"/products/{product['id']}")
    assert deleted.status_code == 204
    assert (await client.get("/snapshot")).json()["products"] == []


async def test_unknown_entities_return_404(client: AsyncClient) -> None:
    assert (await client.post("/products/missing/toggle-active")).status_code == 404
    assert (await client.delete("/stores/missing")).status_code == 404
    assert (await client.get("/replenishment", params={"store_id": "missing"})).status_code == 404
    assert (await client.delete("/categories/missing")).status_code == 404


async def test_blank_names_return_400(client: AsyncClient) -> None:
    assert (await client.post("/categories", json={"name": " "})).status_code == 400
    assert (await client.post("/stores", json={"name": ""})).status_code == 400


async def test_remote_failures_map_to_status_codes(client: AsyncClient, remote) -> None:
    product = await _create_product(client, "Candle")

    remote.fail_next("upsert", RemoteRejectedError())
    rejected = await client.post(f"/products/{product['id']}/toggle-active")
    assert rejected.status_code == 502
    assert rejected.json()["detail"].startswith("Changing the product status failed.")

    remote.fail_next("upsert", NotAuthenticatedError())
    signed_out = await client.post(f"/products/{product['id']}/toggle-active")
    assert signed_out.status_code == 401

    snapshot = (await client.get("/snapshot")).json()
    assert snapshot["products"][0]["active"] is True


async def test_inventory_and_replenishment(client: AsyncClient, service) -> None:
    store = await _create_store(client)
    candle = await _create_product(client, "Candle", "Home")
    await _create_product(client, "Soap", "Bath")

    accepted = await client.put(f"/inventory/{store['id']}/{candle['id']}", json={"on_hand_qty": 1})
    assert accepted.status_code == 202
    assert accepted.json()["on_hand_qty"] == 1
    assert (
        await client.put(f"/inventory/{store['id']}/{candle['id']}", json={"on_hand_qty": -1})
    ).status_code == 422
    await service.flush_pending_edits()

    per_store = (await client.get("/replenishment", params={"store_id": store["id"]})).json()
    assert [(line["product_name"], line["need"]) for line in per_store] == [("Soap", 5), ("Candle", 4)]

    overall = (await client.get("/replenishment")).json()
    assert [(line["product_name"], line["total_need"]) for line in overall] == [
        ("Soap", 5),
        ("Candle", 4),
    ]

    exported = await client.get("/replenishment", params={"store_id": store["id"], "format": "csv"})
    assert exported.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(StringIO(exported.text)))
    assert rows[0] == ["store", "category", "product", "on_hand", "target", "need"]
    assert rows[1] == ["Mapo", "Bath", "Soap", "0", "5", "5"]

    stock = (await client.get("/stock", params={"low_stock_only": True})).json()
    assert len(stock) == 2

    summary = (await client.get("/summary")).json()
    assert summary["total_need"] == 9
    assert summary["need_product_count"] == 2


async def test_enablement_routes(client: AsyncClient) -> None:
    store = await _create_store(client)
    candle = await _create_product(client, "Candle")
    await _create_product(client, "Soap")

    single = await client.put(
        f"/stores/{store['id']}/products/{candle['id']}", json={"enabled": False}
    )
    assert single.status_code == 200
    assert single.json()["enabled"] is False
    assert [row["product_name"] for row in (await client.get("/stock")).json()] == ["Soap"]

    bulk = await client.put(f"/stores/{store['id']}/products", json={"enabled": True})
    assert bulk.json() == {"updated": 2}
    assert len((await client.get("/stock")).json()) == 2


async def test_planning_settings(client: AsyncClient) -> None:
    assert (await client.get("/settings/planning")).json() == {
        "default_target_qty": 5,
        "low_stock_threshold": 2,
    }

    response = await client.put(
        "/settings/planning", json={"default_target_qty": 12, "low_stock_threshold": 4}
    )

    assert response.status_code == 200
    assert (await client.get("/settings/planning")).json()["default_target_qty"] == 12


async def test_import_conflict_then_resolution(client: AsyncClient) -> None:
    first = await client.post(
        "/imports/products", json={"rows": [{"category": "Home", "name": "Candle", "sku": "A123"}]}
    )
    assert first.status_code == 200
    assert first.json()["created"] == 1

    payload = {"rows": [{"category": "Home", "name": "Candle", "sku": "B456"}]}
    conflict = await client.post("/imports/products", json=payload)
    assert conflict.status_code == 409
    assert conflict.json()["conflicts"][0]["field"] == "sku"

    resolved = await client.post("/imports/products", json={**payload, "strategy": "overwrite"})
    assert resolved.status_code == 200
    assert resolved.json()["updated"] == 1


async def test_csv_import_endpoint(client: AsyncClient) -> None:
    body = "category,name,active,price\nHome,Candle,yes,\"1,200\"\nHome,Soap,no,\n"

    response = await client.post(
        "/imports/products/csv",
        content=body.encode("utf-8"),
        headers={"content-type": "text/csv"},
    )

    assert response.status_code == 200
    assert response.json()["created"] == 2
    products = {p["name"]: p for p in (await client.get("/snapshot")).json()["products"]}
    assert products["Candle"]["price"] == 1200
    assert products["Soap"]["active"] is False

    bad = await client.post("/imports/products/csv", content=b"name,price\nCandle,1\n")
    assert bad.status_code == 400


async def test_sales_settlement_route(client: AsyncClient, service) -> None:
    store = await _create_store(client)
    candle = await _create_product(client, "Candle")
    await client.put(f"/inventory/{store['id']}/{candle['id']}", json={"on_hand_qty": 3})
    await service.flush_pending_edits()

    response = await client.post(
        f"/stores/{store['id']}/sales", json={"lines": [{"product_id": candle["id"], "sold_qty": 5}]}
    )

    assert response.status_code == 200
    assert [(item["product_id"], item["on_hand_qty"]) for item in response.json()] == [(candle["id"], 0)]
    assert (await client.post(f"/stores/{store['id']}/sales", json={"lines": []})).status_code == 422
    missing = await client.post("/stores/missing/sales", json={"lines": [{"product_id": "x", "sold_qty": 1}]})
    assert missing.status_code == 404
