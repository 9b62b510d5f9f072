import asyncio
import gc

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from main import app
from realtime import ChangeHub

CUSTOMER_INFO = {"name": "Ana Reyes", "address": "12 Mabini St, Quezon City", "phone_number": "09171234567"}


@pytest.fixture
def client(db):
    with TestClient(app) as c:
        yield c


def token_for(client, email, password):
    res = client.post("/api/login", data={"username": email, "password": password})
    assert res.status_code == 200, res.text
    return res.json()["access_token"]


@pytest.fixture
def customer_headers(client):
    res = client.post("/api/register", json={"name": "Ana Reyes", "email": "ana@example.com", "password": "secret123"})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {token_for(client, 'ana@example.com', 'secret123')}"}


@pytest.fixture
def admin_headers(client, make_user):
    email, password = make_user("admin@example.com", role="admin", name="Admin")
    return {"Authorization": f"Bearer {token_for(client, email, password)}"}


@pytest.fixture
def products(client):
    return {p["name"]: p for p in client.get("/api/products").json()}


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"


def test_startup_seeds_catalog(products):
    assert len(products) == 5
    assert products["Sunflower Seeds"]["stock"] == 100


def test_register_login_me(client, customer_headers):
    me = client.get("/api/me", headers=customer_headers).json()
    assert me["email"] == "ana@example.com"
    assert me["role"] == "customer"
    assert client.post("/api/login", data={"username": "ana@example.com", "password": "nope"}).status_code == 400
    res = client.post("/api/register", json={"name": "Ana", "email": "ana@example.com", "password": "secret123"})
    assert res.status_code == 422


def test_bad_token_is_rejected(client):
    res = client.get("/api/orders", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_anonymous_session_cannot_checkout(client, products):
    token = client.post("/api/auth/anonymous").json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    seeds = products["Sunflower Seeds"]
    res = client.post("/api/orders", headers=headers, json={
        "items": [{"product_id": seeds["id"], "quantity": 1}],
        "customer_info": CUSTOMER_INFO,
    })
    assert res.status_code == 401
    assert client.get("/api/products").json()


def test_cart_preview_clamps(client, products):
    succulent = products["Succulent Plant"]
    res = client.post("/api/cart/preview", json={"items": [{"product_id": succulent["id"], "quantity": 40}]})
    body = res.json()
    assert body["item_count"] == 30
    assert body["total"] == 10500.0
    assert body["notices"][0]["available"] == 30


def test_checkout_and_track(client, products, customer_headers, admin_headers):
    seeds = products["Sunflower Seeds"]
    res = client.post("/api/orders", headers=customer_headers, json={
        "items": [{"product_id": seeds["id"], "quantity": 2}],
        "customer_info": CUSTOMER_INFO,
    })
    assert res.status_code == 201, res.text
    order = res.json()["order"]
    assert order["total_amount"] == 300
    assert order["status"] == "Order Placed"
    assert client.get(f"/api/products/{seeds['id']}").json()["stock"] == 98

    mine = client.get("/api/orders", headers=customer_headers).json()
    assert [o["order_number"] for o in mine] == [order["order_number"]]

    res = client.patch(f"/api/admin/orders/{order['id']}", headers=admin_headers,
                       json={"status": "Processing", "tracking_number": " TRK-7 "})
    assert res.status_code == 200
    assert res.json()["order"]["tracking_number"] == "TRK-7"

    res = client.patch(f"/api/admin/orders/{order['id']}", headers=customer_headers, json={"status": "Shipped"})
    assert res.status_code == 403

    cancelled = client.post(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert cancelled.status_code == 200
    assert client.get("/api/orders?bucket=cancelled", headers=customer_headers).json()[0]["id"] == order["id"]

    res = client.post(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert res.status_code == 409

    res = client.patch(f"/api/admin/orders/{order['id']}", headers=admin_headers, json={"status": "Delivered"})
    assert res.status_code == 409
    res = client.patch(f"/api/admin/orders/{order['id']}", headers=admin_headers,
                       json={"status": "Delivered", "override": True})
    assert res.status_code == 200

    everyone = client.get("/api/admin/orders", headers=admin_headers).json()
    assert everyone[0]["status"] == "Delivered"
    assert client.get("/api/admin/orders", headers=customer_headers).status_code == 403


def test_checkout_validation_errors(client, products, customer_headers):
    seeds = products["Sunflower Seeds"]
    res = client.post("/api/orders", headers=customer_headers, json={
        "items": [{"product_id": seeds["id"], "quantity": 1}],
        "customer_info": {**CUSTOMER_INFO, "phone_number": "x"},
    })
    assert res.status_code == 422
    assert "phone_number" in res.json()["errors"]

    res = client.post("/api/orders", headers=customer_headers, json={"items": [], "customer_info": CUSTOMER_INFO})
    assert res.status_code == 422


def test_admin_product_management(client, admin_headers, customer_headers):
    product = {
        "name": "Mint Seeds",
        "description": "Cool mint for tea.",
        "category": "seeds",
        "image_url": "https://placehold.co/300x300?text=Mint",
        "price": "85",
        "stock": "20",
    }
    assert client.post("/api/admin/products", json=product).status_code == 403
    assert client.post("/api/admin/products", headers=customer_headers, json=product).status_code == 403

    res = client.post("/api/admin/products", headers=admin_headers, json={**product, "price": "0"})
    assert res.status_code == 422
    assert "price" in res.json()["errors"]

    created = client.post("/api/admin/products", headers=admin_headers, json=product).json()
    assert created["price"] == 85.0

    res = client.put(f"/api/admin/products/{created['id']}", headers=admin_headers, json={"stock": 3})
    assert res.json()["stock"] == 3

    assert client.delete(f"/api/admin/products/{created['id']}", headers=admin_headers).json() == {"ok": True}
    assert client.get(f"/api/products/{created['id']}").status_code == 404


def test_profile_roundtrip(client, customer_headers):
    assert client.get("/api/profile", headers=customer_headers).json()["name"] == "Ana Reyes"
    res = client.put("/api/profile", headers=customer_headers, json=CUSTOMER_INFO)
    assert res.status_code == 200
    assert client.get("/api/profile", headers=customer_headers).json()["address"] == CUSTOMER_INFO["address"]
    assert client.get("/api/profile").status_code == 401


def test_orders_feed_pushes_new_orders(client, products, customer_headers):
    token = customer_headers["Authorization"].split(" ", 1)[1]
    seeds = products["Basil Seeds"]
    with client.websocket_connect(f"/ws/orders?token={token}") as ws:
        assert ws.receive_json() == []
        client.post("/api/orders", headers=customer_headers, json={
            "items": [{"product_id": seeds["id"], "quantity": 1}],
            "customer_info": CUSTOMER_INFO,
        })
        pushed = ws.receive_json()
        assert len(pushed) == 1
        assert pushed[0]["status"] == "Order Placed"


def test_orders_feed_all_scope_needs_admin(client, customer_headers):
    token = customer_headers["Authorization"].split(" ", 1)[1]
    with client.websocket_connect(f"/ws/orders?token={token}&scope=all") as ws:
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


class ClosedSocket:
    """Every send fails; the client hangs up shortly after connecting."""

    async def send_json(self, data):
        raise RuntimeError("Cannot call send once a close message has been sent.")

    async def receive_text(self):
        await asyncio.sleep(0.05)
        raise WebSocketDisconnect(code=1000)


def test_stream_collects_sender_error_on_disconnect():
    hub = ChangeHub()

    async def run():
        unhandled = []
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: unhandled.append(context))
        await main._stream(ClosedSocket(), lambda push: hub.subscribe("products", push, snapshot=lambda: []))
        gc.collect()
        await asyncio.sleep(0)
        return unhandled

    assert asyncio.run(run()) == []
    assert not hub.has_subscribers("products")
