from datetime import timedelta

import config
from auth import create_auth_token, verify_auth_token, verify_password
from database import get_db, now_utc


def test_signup_sets_cookie_and_returns_public_user(client):
    res = client.post("/api/auth/signup", json={"name": "Bob", "email": "Bob@Example.com", "password": "supersecret"})
    assert res.status_code == 201
    user = res.json()["user"]
    assert user["email"] == "bob@example.com"
    assert user["role"] == "user"
    assert "password_hash" not in user
    assert config.AUTH_COOKIE_NAME in res.cookies

    me = client.get("/api/user/me")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "bob@example.com"


def test_signup_duplicate_email(client, user):
    res = client.post("/api/auth/signup", json={"name": "Alice", "email": user["email"], "password": "supersecret"})
    assert res.status_code == 409


def test_signup_rejects_short_password(client):
    res = client.post("/api/auth/signup", json={"name": "Bob", "email": "bob@example.com", "password": "short"})
    assert res.status_code == 422


def test_signup_admin_email_gets_admin_role(client, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAILS", "boss@example.com")
    res = client.post("/api/auth/signup", json={"name": "Boss", "email": "boss@example.com", "password": "supersecret"})
    assert res.json()["user"]["role"] == "admin"


def test_login(client, user):
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "password123"})
    assert res.status_code == 200
    assert res.json()["user"]["id"] == user["id"]
    assert config.AUTH_COOKIE_NAME in res.cookies


def test_login_bad_password(client, user):
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "wrong-password"})
    assert res.status_code == 401


def test_login_inactive_account(client, make_user):
    make_user(email="gone@example.com", status="inactive")
    res = client.post("/api/auth/login", json={"email": "gone@example.com", "password": "password123"})
    assert res.status_code == 403


def test_me_requires_auth(client):
    assert client.get("/api/user/me").status_code == 401


def test_me_rejects_garbage_token(client):
    res = client.get("/api/user/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_expired_token(client, user):
    token = create_auth_token(user["id"], expires_delta=timedelta(seconds=-1))
    assert verify_auth_token(token) is None
    res = client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_update_profile(client, user_headers):
    res = client.patch("/api/user/me", json={"phone": "+251911000000", "default_address": "Bole, Addis Ababa"}, headers=user_headers)
    assert res.status_code == 200
    body = res.json()["user"]
    assert body["phone"] == "+251911000000"
    assert body["default_address"] == "Bole, Addis Ababa"


def test_signout_clears_cookie(client, user):
    client.post("/api/auth/login", json={"email": user["email"], "password": "password123"})
    res = client.post("/api/auth/signout")
    assert res.json() == {"success": True}
    assert client.get("/api/user/me").status_code == 401


def test_legacy_logout_is_gone(client):
    assert client.post("/api/auth/logout").status_code == 410


def test_password_hash_round_trip(user):
    assert verify_password("password123", user["password_hash"])
    assert not verify_password("password123", None)


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def test_google_login_creates_user(client, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-123")

    def fake_get(url, params=None, timeout=None):
        assert params == {"id_token": "tok"}
        return FakeResponse(200, {
            "aud": "client-123",
            "email": "gina@example.com",
            "email_verified": "true",
            "name": "Gina",
            "picture": "https://img.example.com/gina.png",
        })

    monkeypatch.setattr("auth.requests.get", fake_get)
    res = client.post("/api/auth/oauth/google", json={"id_token": "tok"})
    assert res.status_code == 200
    user = res.json()["user"]
    assert user["email"] == "gina@example.com"
    assert user["image"] == "https://img.example.com/gina.png"


def test_google_login_wrong_audience(client, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-123")
    monkeypatch.setattr(
        "auth.requests.get",
        lambda url, params=None, timeout=None: FakeResponse(200, {"aud": "other", "email": "x@example.com", "email_verified": "true"}),
    )
    res = client.post("/api/auth/oauth/google", json={"id_token": "tok"})
    assert res.status_code == 401


def test_google_login_not_configured(client, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", None)
    res = client.post("/api/auth/oauth/google", json={"id_token": "tok"})
    assert res.status_code == 503


def test_admin_two_factor_window(client, make_user, auth_headers):
    admin = make_user(email="root@example.com", role="admin", two_factor_enabled=True)
    headers = auth_headers(admin)
    assert client.get("/api/admin/dashboard", headers=headers).status_code == 403

    get_db()["user"].update_one({"_id": admin["_id"]}, {"$set": {"two_factor_verified_at": now_utc() - timedelta(hours=13)}})
    assert client.get("/api/admin/dashboard", headers=headers).status_code == 403

    get_db()["user"].update_one({"_id": admin["_id"]}, {"$set": {"two_factor_verified_at": now_utc()}})
    assert client.get("/api/admin/dashboard", headers=headers).status_code == 200
