from __future__ import annotations

from fastapi.testclient import TestClient


def test_token_success(client: TestClient) -> None:
    resp = client.post(
        "/api/v1/auth/token",
        data={"username": "admin", "password": "password"},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert isinstance(body["access_token"], str) and body["access_token"]
    assert resp.headers["Cache-Control"] == "no-store"


def test_token_wrong_password(client: TestClient) -> None:
    resp = client.post(
        "/api/v1/auth/token",
        data={"username": "admin", "password": "wrong"},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == 401


def test_me_reports_granted_scopes(client: TestClient, token: str) -> None:
    resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["username"] == "admin"
    assert set(body["scopes"]) == {"telemetry:read", "devices:manage"}


def test_requested_scopes_narrow_the_token(client: TestClient) -> None:
    resp = client.post(
        "/api/v1/auth/token",
        data={
            "username": "admin",
            "password": "password",
            "scope": "telemetry:read devices:manage bogus:scope",
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    token = resp.json()["access_token"]
    body = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}).json()

    assert sorted(body["scopes"]) == ["devices:manage", "telemetry:read"]


def test_garbage_token_is_rejected(client: TestClient) -> None:
    resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
