import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from govision import devserver

PASSWORD = "Secret123"


@pytest.fixture
def client():
    devserver.reset_state()
    with TestClient(devserver.app) as c:
        yield c
    devserver.reset_state()


def _png(w=64, h=32):
    ok, buf = cv2.imencode(".png", np.zeros((h, w, 3), dtype=np.uint8))
    return buf.tobytes()


def _login(client, email="me@example.com"):
    assert client.post("/v1/auth/register", json={"email": email, "password": PASSWORD}).status_code == 201
    tokens = client.post("/v1/auth/login", json={"email": email, "password": PASSWORD}).json()
    return tokens, {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.mark.parametrize("body, message", [
    ({"email": "", "password": PASSWORD}, "email is required"),
    ({"email": "not-an-email", "password": PASSWORD}, "invalid email format"),
    ({"email": "a@b.co", "password": "Short1"}, "password must be at least 8 characters"),
    ({"email": "a@b.co", "password": "alllowercase1"}, "password must contain"),
])
def test_register_validation(client, body, message):
    r = client.post("/v1/auth/register", json=body)
    assert r.status_code == 400
    assert r.json()["message"].startswith(message)


def test_register_twice_conflicts(client):
    _login(client)
    r = client.post("/v1/auth/register", json={"email": "me@example.com", "password": PASSWORD})
    assert r.status_code == 409
    assert r.json() == {"message": "email already registered"}


def test_login_rejects_bad_password(client):
    _login(client)
    r = client.post("/v1/auth/login", json={"email": "me@example.com", "password": "Wrong1234"})
    assert r.status_code == 401
    assert "message" in r.json()


def test_upload_requires_auth(client):
    r = client.post("/v1/image/upload", files={"file": ("a.png", _png(), "image/png")})
    assert r.status_code == 401


def test_upload_rejects_wrong_type(client):
    _, headers = _login(client)
    r = client.post("/v1/image/upload", headers=headers, files={"file": ("a.txt", b"hello", "text/plain")})
    assert r.status_code == 400
    assert r.json()["message"].startswith("unsupported file type")


def test_job_lifecycle(client):
    _, headers = _login(client)
    r = client.post("/v1/image/upload", headers=headers, files={"file": ("a.png", _png(), "image/png")})
    assert r.status_code == 202
    accepted = r.json()
    assert accepted["status"] == "queued"
    job_url = f"/v1/jobs/{accepted['job_id']}"

    first = client.get(job_url, headers=headers).json()
    assert first["status"] == "pending"
    assert first["image_url"] is None and first["predictions"] == []

    done = client.get(job_url, headers=headers).json()
    assert done["status"] == "completed"
    [pred] = done["predictions"]
    assert pred == {"x": 32.0, "y": 16.0, "width": 32.0, "height": 16.0,
                    "confidence": 0.9, "class_id": 0, "class": "object"}

    image = client.get(done["image_url"])
    assert image.status_code == 200
    assert image.content == _png()


def test_jobs_are_private(client):
    _, owner = _login(client, "owner@example.com")
    _, other = _login(client, "other@example.com")
    job_id = client.post("/v1/image/upload", headers=owner,
                         files={"file": ("a.png", _png(), "image/png")}).json()["job_id"]

    assert client.get(f"/v1/jobs/{job_id}", headers=other).status_code == 404


def test_expired_token_and_refresh(client, monkeypatch):
    monkeypatch.setattr(devserver, "ACCESS_TTL_SECONDS", 0)
    tokens, headers = _login(client)

    r = client.get("/v1/jobs/whatever", headers=headers)
    assert r.status_code == 401
    assert r.json() == {"message": "token expired"}

    monkeypatch.setattr(devserver, "ACCESS_TTL_SECONDS", 900)
    fresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert fresh.status_code == 200
    assert set(fresh.json()) == {"access_token", "refresh_token"}

    # Refresh tokens are single-use
    again = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert again.status_code == 400


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
