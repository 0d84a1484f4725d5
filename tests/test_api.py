"""
Tests for the FastAPI endpoints
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from cartsync.exceptions import BackendError
from cartsync.main import create_app
from cartsync.models import CartState
from cartsync.snapshot_store import SnapshotStore

from tests.conftest import ADMIN, SHOPPER, make_line

CART = [{"recordId": 1, "amount": 2, "price": "10.00", "stock": 4, "titleRecord": "Blue Train"}]


@pytest.fixture
def client(backend, fake_redis):
    app = create_app(backend=backend, snapshots=SnapshotStore(redis_client=fake_redis, ttl=60))
    with TestClient(app) as test_client:
        yield test_client


def _login(client, email=SHOPPER, is_admin=False):
    response = client.post("/session/login", json={"email": email, "is_admin": is_admin})
    assert response.status_code == 200
    return response.json()


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["redis"]["status"] == "healthy"
        assert "X-Response-Time-Ms" in response.headers

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"

    def test_health_reports_redis_down(self, client, fake_redis):
        fake_redis.error = ConnectionError("down")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["redis"]["status"] == "unhealthy"


class TestSessionEndpoints:
    """Tests for login, logout and viewing."""

    def test_cart_requires_login(self, client):
        assert client.get("/cart").status_code == 401

    def test_login_returns_cart(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART

        data = _login(client)

        assert data["owner_email"] == SHOPPER
        assert data["item_count"] == 2
        assert data["total_price"] == "20.00"
        assert data["lines"][0]["title"] == "Blue Train"
        assert data["viewing_as_admin"] is False

    def test_logout(self, client):
        _login(client)

        response = client.post("/session/logout")

        assert response.status_code == 200
        assert client.get("/cart").status_code == 401

    def test_admin_views_other_cart(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        _login(client, ADMIN, is_admin=True)

        response = client.post(f"/session/view/{SHOPPER}")

        assert response.status_code == 200
        assert response.json()["viewing_as_admin"] is True
        assert response.json()["item_count"] == 2

        own = client.post("/session/view-own")
        assert own.json()["owner_email"] == ADMIN
        assert own.json()["lines"] == []

    def test_shopper_cannot_view_others(self, client):
        _login(client)
        assert client.post(f"/session/view/{ADMIN}").status_code == 403


class TestCartEndpoints:
    """Tests for cart mutations over HTTP."""

    def test_add_item(self, client, backend):
        backend.add_record(1, price="10.00", stock=4)
        _login(client)

        response = client.post("/cart/items/1")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "confirmed"
        assert data["line"]["quantity"] == 1
        assert data["stock"] == 3
        assert client.get("/cart").json()["item_count"] == 1

    def test_add_item_with_catalog_data(self, client, backend):
        """Catalog data sent with the add prices the new line before the backend answers."""
        backend.add_record(3, price="12.00", stock=2, title="Horses")
        _login(client)
        pending_totals = []
        backend.on_mutate = lambda email, record_id, delta: pending_totals.append(
            client.app.state.session.store.aggregates().total_price
        )

        response = client.post(
            "/cart/items/3",
            json={"price": "12.00", "title": "Horses", "group_name": "Patti Smith", "stock": 2}
        )

        assert response.status_code == 200
        assert pending_totals == [Decimal("12.00")]
        line = response.json()["line"]
        assert line["title"] == "Horses"
        assert line["group_name"] == "Patti Smith"
        assert client.get("/cart").json()["total_price"] == "12.00"

    def test_add_item_rejects_negative_price(self, client, backend):
        _login(client)
        response = client.post("/cart/items/3", json={"price": "-1"})
        assert response.status_code == 422
        assert backend.mutations == []

    def test_item_count(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        _login(client)

        response = client.get("/cart/count")

        assert response.status_code == 200
        assert response.json() == {"owner_email": SHOPPER, "item_count": 2}

    def test_item_count_requires_login(self, client):
        assert client.get("/cart/count").status_code == 401

    def test_remove_item(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        backend.add_record(1, stock=4)
        _login(client)

        response = client.delete("/cart/items/1")

        assert response.status_code == 200
        assert response.json()["line"]["quantity"] == 1

    def test_failed_mutation_is_rolled_back(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        backend.mutation_error = BackendError("Backend returned 500", status_code=500)
        _login(client)

        response = client.post("/cart/items/1")

        assert response.status_code == 502
        assert response.json()["record_id"] == 1
        assert client.get("/cart").json()["item_count"] == 2

    def test_out_of_stock(self, client, backend):
        backend.cart_payloads[SHOPPER] = [{"recordId": 1, "amount": 1, "price": 5, "stock": 0}]
        _login(client)

        response = client.post("/cart/items/1")

        assert response.status_code == 400
        assert backend.mutations == []

    def test_disabled_cart(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        backend.disabled.add(SHOPPER)
        _login(client)

        response = client.post("/cart/items/1")

        assert response.status_code == 400
        assert client.get("/cart").json()["item_count"] == 0

    def test_resync(self, client, backend):
        _login(client)
        backend.cart_payloads[SHOPPER] = CART

        response = client.post("/cart/resync")

        assert response.status_code == 200
        assert response.json()["item_count"] == 2

    def test_resync_failure_sets_error(self, client, backend):
        _login(client)
        backend.details_error = BackendError("Backend unreachable")

        response = client.post("/cart/resync")

        assert response.status_code == 200
        assert response.json()["error"] == "Could not load the cart from the server"

    def test_admin_disables_cart(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        _login(client, ADMIN, is_admin=True)
        client.post(f"/session/view/{SHOPPER}")

        response = client.post("/cart/enabled", json={"enabled": False})

        assert response.status_code == 200
        assert response.json()["enabled"] is False
        assert SHOPPER in backend.disabled

    def test_shopper_cannot_disable(self, client):
        _login(client)
        assert client.post("/cart/enabled", json={"enabled": False}).status_code == 403


class TestStockEndpoint:
    """Tests for stock lookups."""

    def test_unknown_stock(self, client):
        assert client.get("/stock/99").json() == {"record_id": 99, "quantity": None, "known": False}

    def test_known_after_resync(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        _login(client)

        assert client.get("/stock/1").json() == {"record_id": 1, "quantity": 4, "known": True}

    def test_offline_falls_back_to_line_stock(self, client, backend, snapshots):
        """Without a server value the stock shown on the cart line is reported."""
        snapshots.save(SHOPPER, CartState(owner_email=SHOPPER, lines=[make_line(1, stock=6)]))
        backend.details_error = BackendError("Backend unreachable")
        _login(client)

        assert client.get("/stock/1").json() == {"record_id": 1, "quantity": 6, "known": True}


class TestOrderEndpoint:
    """Tests for order creation over HTTP."""

    def test_create_order(self, client, backend):
        backend.cart_payloads[SHOPPER] = CART
        _login(client)

        response = client.post("/orders", json={"payment_method": "paypal"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["cart"]["item_count"] == 0
        assert backend.orders == [(SHOPPER, "paypal")]

    def test_empty_cart(self, client):
        _login(client)
        assert client.post("/orders", json={}).status_code == 400
