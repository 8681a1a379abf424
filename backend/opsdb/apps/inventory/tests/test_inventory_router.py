from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from opsdb.database import Base
from opsdb.errors import ConfigurationError
from opsdb.main import create_app
from opsdb.serve import server_options


@pytest.fixture()
def client():
    app = create_app("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=app.state.db_engine)
    with TestClient(app) as test_client:
        yield test_client


def _seed(client, quantity: int = 10) -> None:
    assert client.post("/inventory/items", json={"id": "X", "name_en": "Starter"}).status_code == 201
    response = client.post(
        "/inventory/receipts",
        json={"destination_location_id": "A", "lines": [{"item_id": "X", "quantity": quantity}]},
        headers={"X-Actor-Id": "store-1"},
    )
    assert response.status_code == 201
    assert response.json()["created_by_id"] == "store-1"


def _service_order(quantity: int) -> dict:
    return {
        "source_location_id": "A",
        "destination": {"type": "ExternalWorkshop", "name": "Workshop"},
        "lines": [{"item_id": "X", "quantity": quantity}],
    }


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_dispatch_and_receive_over_http(client):
    _seed(client)

    response = client.post("/inventory/service-orders", json=_service_order(10), headers={"X-Actor-Id": "user-1"})
    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "DISPATCHED"
    assert order["dispatched_by_id"] == "user-1"

    body = {"lines": [{"item_id": "X", "add_returned": 7, "add_scrapped": 3}]}
    headers = {"Idempotency-Key": "rcv-1", "X-Actor-Id": "user-2"}
    first = client.post(f"/inventory/orders/{order['id']}/receive", json=body, headers=headers)
    replay = client.post(f"/inventory/orders/{order['id']}/receive", json=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"id": order["id"], "code": order["code"], "status": "COMPLETED"}
    assert replay.status_code == 200
    assert replay.json()["status"] == "COMPLETED"
    assert client.get("/inventory/items/X").json()["stock_by_location"] == {"A": 7}

    history = client.get("/inventory/items/X/history", params={"location_id": "A"}).json()
    assert history["starting_balance"] == 0
    assert history["entries"][-1]["balance"] == 7


def test_errors_map_to_status_codes(client):
    _seed(client)

    short = client.post("/inventory/service-orders", json=_service_order(15))
    assert short.status_code == 400
    assert short.json()["detail"]["code"] == "insufficient_stock"
    assert short.json()["detail"]["detail"][0]["requested"] == 15

    assert client.get("/inventory/orders/missing").status_code == 404
    assert client.get("/inventory/items/nope/movements").status_code == 404

    order = client.post("/inventory/service-orders", json=_service_order(2)).json()
    assert client.post(f"/inventory/orders/{order['id']}/cancel").json()["status"] == "CANCELLED"
    again = client.post(f"/inventory/orders/{order['id']}/cancel")
    assert again.status_code == 400
    assert again.json()["detail"]["code"] == "invalid_transition"


def test_transfer_audit_endpoints(client):
    _seed(client)
    order = client.post(
        "/inventory/transfers",
        json={"source_location_id": "A", "destination_location_id": "B", "lines": [{"item_id": "X", "quantity": 3}]},
    ).json()
    assert client.post(f"/inventory/orders/{order['id']}/approve").json()["status"] == "COMPLETED"

    report = client.get("/inventory/audit/transfer-gaps").json()
    assert report["scanned_orders"] == 1
    assert report["gaps"] == []
    assert client.post("/inventory/audit/transfer-gaps/repair").json() == {"repaired": 0}
    assert client.get("/inventory/audit/negative-stock").json()["entries"] == []

    listed = client.get("/inventory/orders", params={"kind": "TRANSFER", "status": "COMPLETED"}).json()
    assert [o["code"] for o in listed] == [order["code"]]


def test_create_app_requires_a_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_WRITE_URL", raising=False)

    with pytest.raises(ConfigurationError) as excinfo:
        create_app()
    assert excinfo.value.code == "database_url_missing"


def test_server_options_come_from_the_environment(monkeypatch):
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("RELOAD", "yes")
    monkeypatch.setenv("SSL_CERTFILE", "/etc/opsdb/cert.pem")
    monkeypatch.delenv("SSL_KEYFILE", raising=False)
    monkeypatch.delenv("SSL_CA_CERTS", raising=False)

    options = server_options()

    assert options["port"] == 9100
    assert options["reload"] is True
    assert options["ssl_certfile"] == "/etc/opsdb/cert.pem"
    assert "ssl_keyfile" not in options
