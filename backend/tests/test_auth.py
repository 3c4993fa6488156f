"""Tests for registration, login and bearer-token resolution."""
from hotelchat.auth import bearer_token, create_access_token

from conftest import PASSWORD, auth


def test_register_and_login(api):
    resp = api.post(
        "/auth/register",
        json={"email": "new@example.com", "password": "pw-1234", "display_name": "Nina", "role": "HOTEL_OWNER"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["role"] == "HOTEL_OWNER"
    assert "password_hash" not in body

    resp = api.post("/auth/login", json={"email": "new@example.com", "password": "pw-1234"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = api.get("/me", headers=auth(token))
    assert me.status_code == 200
    assert me.json()["display_name"] == "Nina"


def test_register_defaults_to_customer(api):
    resp = api.post("/auth/register", json={"email": "c@example.com", "password": "x", "display_name": "C"})
    assert resp.json()["role"] == "CUSTOMER"


def test_duplicate_email(api, people):
    resp = api.post(
        "/auth/register",
        json={"email": people.customer.email, "password": "x", "display_name": "Again"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_ARGUMENT"


def test_invalid_payload_reports_fields(api):
    resp = api.post("/auth/register", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["ok"] is False
    assert body["code"] == "INVALID_ARGUMENT"
    assert body["errors"]


def test_bad_password(api, people):
    resp = api.post("/auth/login", json={"email": people.customer.email, "password": PASSWORD + "x"})
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "error": "Invalid credentials", "code": "UNAUTHORIZED"}


def test_me_requires_valid_token(api, people):
    assert api.get("/me").status_code == 401
    assert api.get("/me", headers=auth("garbage")).status_code == 401

    expired = create_access_token(str(people.customer.id), expires_minutes=-1)
    resp = api.get("/me", headers=auth(expired))
    assert resp.status_code == 401
    assert resp.json()["error"] == "Token expired"

    unknown = create_access_token("4242")
    assert api.get("/me", headers=auth(unknown)).status_code == 401


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None
