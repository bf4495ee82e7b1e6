from decimal import Decimal


def _create_item(client, sku, item_class, qty=0, **extra):
    r = client.post(
        "/v1/stock-items",
        json={"sku": sku, "name": sku, "item_class": item_class, "initial_quantity": str(qty), **extra},
        headers={"X-Actor": "alice"},
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_stock_item_adjust_and_history(client):
    item = _create_item(client, "API-MAT", "RAW_MATERIAL", 10)
    assert Decimal(item["qty_on_hand"]) == Decimal("10")

    r = client.post(
        f"/v1/stock-items/{item['id']}/adjust",
        json={"delta": "-4", "reason": "scrap"},
        headers={"X-Actor": "bob", "Idempotency-Key": "adj-1"},
    )
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["qty_on_hand"]) == Decimal("6")

    # rejeu
    r = client.post(
        f"/v1/stock-items/{item['id']}/adjust",
        json={"delta": "-4", "reason": "scrap"},
        headers={"Idempotency-Key": "adj-1"},
    )
    assert Decimal(r.json()["qty_on_hand"]) == Decimal("6")

    r = client.get(f"/v1/stock-items/{item['id']}/movements")
    assert r.status_code == 200
    moves = r.json()
    assert [m["movement_type"] for m in moves] == ["INITIAL", "ADJUSTMENT"]
    assert moves[-1]["actor"] == "bob"
    assert moves[0]["actor"] == "alice"


def test_errors_are_mapped_to_http(client):
    item = _create_item(client, "API-ERR", "FINISHED_GOOD", 1)

    r = client.post(f"/v1/stock-items/{item['id']}/adjust", json={"delta": "-5"})
    assert r.status_code == 400
    assert r.json()["code"] == "insufficient_stock"

    r = client.get("/v1/sales-orders/9999/shortage")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"

    r = client.post("/v1/stock-items", json={"sku": "API-ERR", "name": "dup", "item_class": "FINISHED_GOOD"})
    assert r.status_code == 409


def test_order_flow_and_seizure_over_http(client):
    x = _create_item(client, "API-X", "FINISHED_GOOD", 5)

    o1 = client.post(
        "/v1/sales-orders",
        json={"reference": "API-O1", "priority": "NORMAL", "items": [{"product_id": x["id"], "quantity": "5"}]},
    ).json()
    r = client.post(f"/v1/sales-orders/{o1['id']}/items/{o1['items'][0]['id']}/assemble")
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "ASSEMBLED"

    o2 = client.post(
        "/v1/sales-orders",
        json={"reference": "API-O2", "priority": "URGENT", "items": [{"product_id": x["id"], "quantity": "3"}]},
    ).json()
    shortage = client.get(f"/v1/sales-orders/{o2['id']}/shortage").json()
    assert Decimal(shortage["total_shortage"]) == Decimal("3")

    r = client.post(f"/v1/sales-orders/{o2['id']}/seize", headers={"X-Actor": "manager"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert Decimal(body["total_reclaimed"]) == Decimal("3")
    assert body["donor_order_ids"] == [o1["id"]]

    # O1 est maintenant en manque, mais aucun ordre de priorité inférieure ne tient de stock
    r = client.post(f"/v1/sales-orders/{o1['id']}/seize")
    assert r.status_code == 409
    assert r.json()["code"] == "seizure_unavailable"

    stock = client.get(f"/v1/stock-items/{x['id']}").json()
    assert Decimal(stock["qty_on_hand"]) == Decimal("0")


def test_production_and_mrp_over_http(client):
    mat = _create_item(client, "API-M", "RAW_MATERIAL", 15)
    prod = _create_item(client, "API-P", "FINISHED_GOOD", 0)

    r = client.put(
        f"/v1/stock-items/{prod['id']}/bom",
        json={"lines": [{"material_id": mat["id"], "quantity_per_unit": "2"}]},
    )
    assert r.status_code == 200, r.text
    assert r.json()["version"] == 1

    po = client.post(
        "/v1/production-orders",
        json={"reference": "API-MO", "items": [{"product_id": prod["id"], "quantity": "10"}]},
    ).json()
    assert po["status"] == "AWAITING_MATERIALS"

    reqs = client.get("/v1/mrp/requirements").json()
    assert reqs[0]["material_id"] == mat["id"]
    assert Decimal(reqs[0]["deficit"]) == Decimal("5")
    assert client.get("/v1/purchasing/requirements").json()[0]["contributing_orders"] == [po["id"]]

    item_id = po["items"][0]["id"]
    r = client.post(f"/v1/production-orders/{po['id']}/items/{item_id}/output", json={"quantity_produced": "8"})
    assert r.status_code == 400
    assert r.json()["code"] == "insufficient_stock"

    r = client.post("/v1/purchasing/receipts", json={"stock_item_id": mat["id"], "quantity": "5"})
    assert r.status_code == 200

    r = client.post(f"/v1/production-orders/{po['id']}/items/{item_id}/output", json={"quantity_produced": "8"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "IN_PROGRESS"
    assert Decimal(client.get(f"/v1/stock-items/{prod['id']}").json()["qty_on_hand"]) == Decimal("8")


def test_blind_inventory_check_hides_expected_quantities(client):
    item = _create_item(client, "API-Y", "FINISHED_GOOD", 20)

    r = client.post("/v1/inventory-checks", json={"blind_mode": True})
    assert r.status_code == 200, r.text
    check = r.json()
    assert check["status"] == "COUNTING"
    assert all(line["expected_quantity"] is None for line in check["items"])

    assert client.post("/v1/inventory-checks", json={}).status_code == 409
    assert client.get("/v1/inventory-checks/active").json()["id"] == check["id"]

    r = client.put(f"/v1/inventory-checks/{check['id']}/items/{item['id']}", json={"actual_quantity": "18"})
    assert r.status_code == 200, r.text
    assert r.json()["expected_quantity"] is None

    review = client.post(f"/v1/inventory-checks/{check['id']}/review").json()
    line = next(line for line in review["items"] if line["stock_item_id"] == item["id"])
    assert Decimal(line["expected_quantity"]) == Decimal("20")
    assert Decimal(line["difference"]) == Decimal("-2")

    done = client.post(f"/v1/inventory-checks/{check['id']}/complete", json={"notes": "ok"}).json()
    assert done["status"] == "COMPLETED"
    assert Decimal(client.get(f"/v1/stock-items/{item['id']}").json()["qty_on_hand"]) == Decimal("18")
    assert client.get("/v1/inventory-checks/active").json() is None


def test_reserve_release_issue_and_set_quantity(client):
    item = _create_item(client, "API-RES", "FINISHED_GOOD", 10)
    base = f"/v1/stock-items/{item['id']}"

    r = client.post(f"{base}/reserve", json={"quantity": "4"}, headers={"X-Actor": "planner"})
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["qty_available"]) == Decimal("6")

    assert Decimal(client.post(f"{base}/release", json={"quantity": "1"}).json()["qty_available"]) == Decimal("7")
    assert Decimal(client.post(f"{base}/issue", json={"quantity": "3"}).json()["qty_available"]) == Decimal("7")

    stock = client.get(base).json()
    assert Decimal(stock["qty_on_hand"]) == Decimal("7")
    assert Decimal(stock["qty_reserved"]) == Decimal("0")

    r = client.post(f"{base}/release", json={"quantity": "1"})
    assert r.status_code == 400

    r = client.put(f"{base}/quantity", json={"quantity": "12", "reason": "recount"})
    assert r.status_code == 200, r.text
    assert Decimal(client.get(base).json()["qty_on_hand"]) == Decimal("12")

    moves = client.get(f"{base}/movements").json()
    assert [m["movement_type"] for m in moves] == [
        "INITIAL",
        "RESERVE",
        "UNRESERVE",
        "ISSUE",
        "RECONCILIATION",
    ]
