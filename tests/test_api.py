import threading
import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from store import RecordStore


@pytest.fixture
def client():
    main.init_services(RecordStore(mongomock.MongoClient()[f"api_{uuid.uuid4().hex[:8]}"]))
    with TestClient(main.app) as c:
        yield c
    main.services.clear()


def register(client, email="a@x.com", password="pw123456", role="Farmer"):
    res = client.post("/auth/register", json={"email": email, "password": password, "fullName": "Ama", "role": role})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "FarmLink API running"}
    assert client.get("/test").json()["database"] == "✅ Connected"


def test_register_login_and_profile(client):
    register(client)
    res = client.post("/auth/login", json={"email": "a@x.com", "password": "pw123456"})
    assert res.status_code == 200
    headers = {"Authorization": f"Bearer {res.json()['access_token']}"}

    me = client.get("/me", headers=headers).json()
    assert me["email"] == "a@x.com"
    assert me["role"] == "Farmer"
    assert "passwordHash" not in me


def test_duplicate_register_conflicts(client):
    register(client)
    res = client.post("/auth/register", json={"email": "a@x.com", "password": "other"})
    assert res.status_code == 409


def test_bad_login_is_generic(client):
    register(client)
    wrong = client.post("/auth/login", json={"email": "a@x.com", "password": "nope"})
    unknown = client.post("/auth/login", json={"email": "z@x.com", "password": "nope"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()


def test_requires_token(client):
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_product_and_order_flow(client):
    headers = register(client)
    product = client.post("/products", json={"name": "Maize", "price": 120, "stock": 5}, headers=headers).json()
    order = client.post("/orders", json={"productId": product["id"], "quantity": 2, "buyerName": "Kofi"}, headers=headers).json()
    assert order["amount"] == 240

    res = client.post(f"/orders/{order['id']}/status", json={"status": "completed"}, headers=headers)
    assert res.status_code == 200
    again = client.post(f"/orders/{order['id']}/status", json={"status": "pending"}, headers=headers)
    assert again.status_code == 409

    dashboard = client.get("/me/dashboard", headers=headers).json()
    assert dashboard["stats"]["totalListings"] == 1
    assert dashboard["stats"]["totalRevenue"] == 240
    assert dashboard["recentActivity"][0]["type"] == "order_completed"
    assert [o["id"] for o in dashboard["orders"]["completed"]] == [order["id"]]

    assert client.delete(f"/products/{product['id']}", headers=headers).json() == {"ok": True}
    assert client.delete(f"/products/{product['id']}", headers=headers).status_code == 404
    assert client.get("/me", headers=headers).json()["stats"]["totalListings"] == 0


def test_other_users_product_is_forbidden(client):
    owner = register(client, "a@x.com")
    other = register(client, "b@x.com")
    product = client.post("/products", json={"name": "Yam", "price": 5}, headers=owner).json()
    res = client.patch(f"/products/{product['id']}", json={"price": 1}, headers=other)
    assert res.status_code == 403


def test_track_activity_endpoint(client):
    headers = register(client)
    res = client.post("/me/activities", json={"type": "weather_check", "payload": {"location": "Accra"}}, headers=headers)
    assert res.json()["displayText"] == "Checked weather for Accra"
    bad = client.post("/me/activities", json={"type": "weather_check", "payload": {}}, headers=headers)
    assert bad.status_code == 400
    history = client.get("/me/activities", headers=headers).json()
    assert [e["type"] for e in history] == ["weather_check"]


def test_reconcile_endpoint(client):
    headers = register(client)
    client.post("/products", json={"name": "Maize", "price": 1}, headers=headers)
    first = client.post("/me/reconcile", headers=headers).json()
    assert first["totalListings"] == 1
    assert first["outOfStockItems"] == 1
    assert client.post("/me/reconcile", headers=headers).json()["changed"] is False


def test_export_import_requires_admin(client):
    farmer = register(client)
    admin = register(client, "admin@x.com", role="Admin")
    assert client.get("/admin/export", headers=farmer).status_code == 403

    snapshot = client.get("/admin/export", headers=admin).json()
    assert {u["email"] for u in snapshot["users"]} == {"a@x.com", "admin@x.com"}

    res = client.post("/admin/import", json=snapshot, headers=admin)
    assert res.json()["imported"]["users"] == 2


def test_profile_patch_cannot_grant_admin(client):
    headers = register(client)
    res = client.patch("/me", json={"role": "Admin", "location": "Ho"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["role"] == "Farmer"
    assert res.json()["location"] == "Ho"
    assert client.get("/admin/export", headers=headers).status_code == 403


def test_export_hides_password_hashes_and_import_keeps_logins(client):
    register(client)
    admin = register(client, "admin@x.com", role="Admin")
    snapshot = client.get("/admin/export", headers=admin).json()
    assert all("passwordHash" not in u for u in snapshot["users"])

    assert client.post("/admin/import", json=snapshot, headers=admin).status_code == 200
    res = client.post("/auth/login", json={"email": "a@x.com", "password": "pw123456"})
    assert res.status_code == 200


def test_bad_import_is_rejected_and_data_kept(client):
    admin = register(client, "admin@x.com", role="Admin")
    snapshot = {"users": [{"uid": "a", "email": "dup@x.com"}, {"uid": "b", "email": "dup@x.com"}]}
    res = client.post("/admin/import", json=snapshot, headers=admin)
    assert res.status_code == 409
    assert client.get("/me", headers=admin).json()["email"] == "admin@x.com"


def test_concurrent_listings_all_counted(client):
    headers = register(client)
    threads = [
        threading.Thread(target=lambda: client.post("/products", json={"name": "Maize", "price": 1}, headers=headers))
        for _ in range(10)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert client.get("/me", headers=headers).json()["stats"]["totalListings"] == 10
