import pytest
from fastapi.testclient import TestClient

from fulfillment_hub.main import app
from fulfillment_hub.settings import settings


@pytest.fixture
def client(db_url, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", db_url)
    monkeypatch.setattr(settings, "DB_CREATE_SCHEMA", True)
    monkeypatch.setattr(settings, "FULFILLMENT_RETRY_BACKOFF", 0.0)
    with TestClient(app) as c:
        yield c


def _add_product(client, product_id="P1", stock=10, **extra):
    body = {"id": product_id, "name": "Widget", "unit_price": "20.00", "stock_quantity": stock}
    body.update(extra)
    response = client.post("/products", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _order(*lines, customer_id="cust1", **extra):
    body = {
        "customer_id": customer_id,
        "lines": [
            {"product_id": pid, "quantity": qty, "unit_price": "20.00", "discount": "0"}
            for pid, qty in lines
        ],
    }
    body.update(extra)
    return body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_fulfill_and_read_order(client):
    product = _add_product(client, stock=10)
    assert product["initial_stock"] == 10

    response = client.post("/orders", json=_order(("P1", 5)))
    assert response.status_code == 201, response.text
    order_id = response.json()["order_id"]
    assert response.json()["attempts"] == 1

    assert client.get("/products/P1/stock").json() == {"product_id": "P1", "stock_quantity": 5}

    order = client.get(f"/orders/{order_id}").json()
    assert order["status"] == "fulfilled"
    assert order["customer_id"] == "cust1"
    assert [line["quantity"] for line in order["lines"]] == [5]

    audit = client.get("/products/P1/audit").json()
    assert [(e["delta"], e["reason"], e["order_id"]) for e in audit] == [(-5, "fulfillment", order_id)]


def test_insufficient_stock_is_409(client):
    _add_product(client, stock=5)
    response = client.post("/orders", json=_order(("P1", 8), customer_id="cust2"))
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "insufficient_stock"
    assert (detail["available"], detail["requested"], detail["line"]) == (5, 8, 1)
    assert detail["aborted_in"] == "reserving"
    assert client.get("/products/P1/stock").json()["stock_quantity"] == 5


def test_invalid_line_is_422_with_line_number(client):
    _add_product(client)
    response = client.post("/orders", json=_order(("P1", 1), ("P1", 0)))
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "validation_error"
    assert detail["line"] == 2


def test_unknown_order_is_404(client):
    response = client.get("/orders/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "not_found"


def test_ship_flow(client):
    _add_product(client)
    order_id = client.post("/orders", json=_order(("P1", 1))).json()["order_id"]

    response = client.post(f"/orders/{order_id}/ship", json={"ship_via": "DHL"})
    assert response.status_code == 200
    assert response.json()["status"] == "shipped"
    assert response.json()["ship_via"] == "DHL"

    again = client.post(f"/orders/{order_id}/ship")
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "invalid_status_transition"


def test_restock_and_reconcile(client):
    _add_product(client, stock=3)
    client.post("/orders", json=_order(("P1", 3)))

    response = client.post("/products/P1/restock", json={"quantity": 4, "notes": "delivery"})
    assert response.status_code == 200
    assert response.json()["stock_quantity"] == 4

    report = client.get("/products/P1/reconcile").json()
    assert report == {"product_id": "P1", "expected_stock": 4, "actual_stock": 4, "consistent": True}


def test_idempotent_request(client):
    _add_product(client)
    body = _order(("P1", 2), idempotency_key="req-1")
    first = client.post("/orders", json=body).json()
    second = client.post("/orders", json=body).json()
    assert second["order_id"] == first["order_id"]
    assert second["replayed"] is True
    assert client.get("/products/P1/stock").json()["stock_quantity"] == 8


def test_duplicate_product_is_rejected(client):
    _add_product(client)
    response = client.post("/products", json={"id": "P1", "name": "Again", "stock_quantity": 1})
    assert response.status_code == 422


def test_reads_of_unknown_product_are_404(client):
    assert client.get("/products/nope/stock").status_code == 404
    assert client.get("/products/nope/reconcile").status_code == 404
    assert client.get("/products/nope/audit").json() == []
