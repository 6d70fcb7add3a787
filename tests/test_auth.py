from datetime import timedelta

from auth import create_access_token
from conftest import PASSWORD


def login(client, email, password=PASSWORD):
    return client.post("/api/auth/login", data={"username": email, "password": password})


def test_register_returns_token_and_hides_hash(client, db):
    res = client.post(
        "/api/auth/register",
        json={"name": "New Shopper", "email": "New@Example.com", "password": "hunter22", "role": "admin"},
    )
    assert res.status_code == 201
    body = res.json()
    assert body["access_token"]
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["role"] == "user"
    assert "password_hash" not in body["user"]
    assert db["user"].find_one({"email": "new@example.com"})["password_hash"] != "hunter22"


def test_register_duplicate_email(client, customer):
    res = client.post("/api/auth/register", json={"name": "Sam Again", "email": "sam@example.com", "password": "hunter22"})
    assert res.status_code == 400


def test_register_short_password(client):
    res = client.post("/api/auth/register", json={"name": "Shorty", "email": "s@example.com", "password": "123"})
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "password"


def test_login_and_me(client, db, customer):
    res = login(client, "SAM@example.com")
    assert res.status_code == 200
    token = res.json()["access_token"]
    assert db["user"].find_one({"_id": customer["_id"]})["last_login"] is not None

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["user"]["email"] == "sam@example.com"


def test_login_wrong_password(client, customer):
    res = login(client, "sam@example.com", "wrong-password")
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid credentials"


def test_deactivated_account_cannot_log_in(client, user_factory):
    user_factory("gone@example.com", is_active=False)
    res = login(client, "gone@example.com")
    assert res.status_code == 401
    assert res.json()["message"] == "Account is deactivated"


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401


def test_invalid_and_expired_tokens(client, customer):
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid authentication token"

    expired = create_access_token({"sub": str(customer["_id"])}, expires_delta=timedelta(minutes=-5))
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Authentication token has expired"


def test_change_password(client, customer, customer_headers):
    res = client.put(
        "/api/auth/change-password",
        json={"current_password": "nope", "new_password": "newsecret"},
        headers=customer_headers,
    )
    assert res.status_code == 400

    res = client.put(
        "/api/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "newsecret"},
        headers=customer_headers,
    )
    assert res.status_code == 200
    assert login(client, "sam@example.com").status_code == 401
    assert login(client, "sam@example.com", "newsecret").status_code == 200


def test_update_profile(client, customer_headers):
    res = client.put(
        "/api/auth/profile",
        json={"name": "Samantha", "address": {"city": "Portland"}},
        headers=customer_headers,
    )
    user = res.json()["user"]
    assert user["name"] == "Samantha"
    assert user["address"]["city"] == "Portland"


def test_upload_avatar(client, customer_headers):
    res = client.post(
        "/api/auth/upload-avatar",
        files={"avatar": ("me.png", b"\x89PNG fake", "image/png")},
        headers=customer_headers,
    )
    assert res.status_code == 200
    assert res.json()["avatar_url"].startswith("/uploads/avatar-")

    res = client.post(
        "/api/auth/upload-avatar",
        files={"avatar": ("notes.txt", b"hello", "text/plain")},
        headers=customer_headers,
    )
    assert res.status_code == 400


def test_admin_routes_reject_customers(client, customer_headers):
    res = client.get("/api/admin/stats", headers=customer_headers)
    assert res.status_code == 403
    assert res.json()["message"] == "Admin access required"


def test_error_envelope_carries_request_id(client):
    res = client.get("/api/auth/me", headers={"X-Request-ID": "req-123"})
    body = res.json()
    assert body["success"] is False
    assert body["requestId"] == "req-123"
    assert res.headers["x-request-id"] == "req-123"
