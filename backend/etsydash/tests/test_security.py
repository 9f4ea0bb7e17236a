"""Tests for token encryption and the session cookie dependency."""

import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from etsydash.security import ALGORITHM, JWT_SECRET, decrypt_secret, encrypt_secret


def _session_cookie(subject: str, expires_in: int = 3600) -> str:
    """Sign a session JWT the way the auth service issues them."""
    now = int(time.time())
    token = jwt.encode({"sub": subject, "iat": now, "exp": now + expires_in}, JWT_SECRET, algorithm=ALGORITHM)
    return f"Bearer {token}"


def test_encrypted_token_is_not_plaintext():
    ciphertext = encrypt_secret("etsy-access-token", context="store:test:access")

    assert "etsy-access-token" not in ciphertext
    assert decrypt_secret(ciphertext, context="store:test:access") == "etsy-access-token"


def test_decrypting_garbage_raises_value_error():
    with pytest.raises(ValueError):
        decrypt_secret("not-a-fernet-token", context="store:test:access")


@pytest.fixture
def cookie_client(test_db_session):
    """App with the real cookie auth; only the database is overridden."""
    from etsydash.main import create_app
    from etsydash.database import get_db

    app = create_app()
    app.dependency_overrides[get_db] = lambda: test_db_session
    return TestClient(app)


def test_request_without_session_cookie_is_rejected(cookie_client):
    assert cookie_client.get("/stores").status_code == 401


def test_request_with_tampered_cookie_is_rejected(cookie_client):
    cookie_client.cookies.set("access_token", "Bearer not-a-jwt")

    assert cookie_client.get("/stores").status_code == 401


def test_bearer_cookie_identifies_the_seller(cookie_client, make_store):
    make_store(user_id="seller-42", shop_name="Mine")
    make_store(user_id="someone-else", shop_name="Theirs")
    cookie_client.cookies.set("access_token", _session_cookie("seller-42"))

    response = cookie_client.get("/stores")

    assert response.status_code == 200
    assert [s["shop_name"] for s in response.json()] == ["Mine"]


def test_expired_session_cookie_is_rejected(cookie_client, make_store):
    make_store(user_id="seller-42")
    cookie_client.cookies.set("access_token", _session_cookie("seller-42", expires_in=-60))

    assert cookie_client.get("/stores").status_code == 401
