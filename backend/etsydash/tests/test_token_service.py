"""Tests for the Etsy token manager (lazy refresh, per-store locking)."""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from etsydash.security import decrypt_secret
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import CredentialExpiredError, PersistenceError, TokenRefreshError
from etsydash.services.token_service import TokenManager, load_credentials, store_tokens

NOW = datetime(2025, 3, 1, 12, 0, 0)
CONFIG = EtsyClientConfig(api_key="test-key", base_url="https://etsy.test/v3", refresh_buffer_seconds=60)


class _RefreshEndpoint:
    """Token endpoint double that records every refresh grant it receives."""

    def __init__(self, status_code=200, payload=None, delay=0.0):
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.delay = delay
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(parse_qs(request.content.decode()))
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(self.status_code, json=self.payload)

    def manager(self) -> TokenManager:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return TokenManager(CONFIG, http_client=http, clock=lambda: NOW)


def _expire_in(db, store, seconds):
    store.token_expires_at = NOW + timedelta(seconds=seconds)
    db.commit()


def test_token_within_buffer_is_refreshed_once(test_db_session, store):
    _expire_in(test_db_session, store, 30)
    endpoint = _RefreshEndpoint()

    credentials = asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))

    assert len(endpoint.requests) == 1
    grant = endpoint.requests[0]
    assert grant["grant_type"] == ["refresh_token"]
    assert grant["client_id"] == ["test-key"]
    assert grant["refresh_token"] == ["refresh-1"]

    assert credentials.access_token == "access-2"
    assert credentials.expires_at == NOW + timedelta(seconds=3600)

    test_db_session.refresh(store)
    stored = load_credentials(store)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-2"
    assert store.token_expires_at == NOW + timedelta(seconds=3600)


def test_token_outside_buffer_is_not_refreshed(test_db_session, store):
    _expire_in(test_db_session, store, 120)
    endpoint = _RefreshEndpoint()

    credentials = asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))

    assert endpoint.requests == []
    assert credentials.access_token == "access-1"


def test_failed_refresh_leaves_stored_tokens_untouched(test_db_session, store):
    _expire_in(test_db_session, store, 30)
    before = (store.access_token_enc, store.refresh_token_enc, store.token_expires_at)
    endpoint = _RefreshEndpoint(status_code=400, payload={"error": "invalid_grant"})

    with pytest.raises(TokenRefreshError) as exc_info:
        asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))

    assert exc_info.value.status_code == 400
    test_db_session.refresh(store)
    assert (store.access_token_enc, store.refresh_token_enc, store.token_expires_at) == before
    assert decrypt_secret(store.access_token_enc, context="test") == "access-1"


def test_incomplete_refresh_response_is_rejected(test_db_session, store):
    _expire_in(test_db_session, store, 30)
    endpoint = _RefreshEndpoint(payload={"access_token": "access-2", "expires_in": 3600})

    with pytest.raises(TokenRefreshError):
        asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))

    test_db_session.refresh(store)
    assert load_credentials(store).access_token == "access-1"


def test_expired_token_without_refresh_token_raises(test_db_session, make_store):
    store = make_store(refresh_token=None)
    _expire_in(test_db_session, store, -10)
    endpoint = _RefreshEndpoint()

    with pytest.raises(CredentialExpiredError):
        asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))
    assert endpoint.requests == []


def test_store_without_tokens_raises_credential_expired(test_db_session, make_store):
    store = make_store(access_token=None)

    with pytest.raises(CredentialExpiredError):
        asyncio.run(_RefreshEndpoint().manager().ensure_valid(test_db_session, store))


def test_unexpired_token_without_refresh_token_is_used_as_is(test_db_session, make_store):
    store = make_store(refresh_token=None)
    _expire_in(test_db_session, store, 30)
    endpoint = _RefreshEndpoint()

    credentials = asyncio.run(endpoint.manager().ensure_valid(test_db_session, store))

    assert credentials.access_token == "access-1"
    assert endpoint.requests == []


def test_concurrent_callers_share_a_single_refresh(test_db_session, store):
    _expire_in(test_db_session, store, 30)
    endpoint = _RefreshEndpoint(delay=0.05)
    manager = endpoint.manager()

    async def _run():
        return await asyncio.gather(
            manager.ensure_valid(test_db_session, store),
            manager.ensure_valid(test_db_session, store),
            manager.ensure_valid(test_db_session, store),
        )

    results = asyncio.run(_run())

    assert len(endpoint.requests) == 1
    assert {c.access_token for c in results} == {"access-2"}


def test_store_tokens_rolls_back_on_commit_failure():
    class _FailingDB:
        rolled_back = False

        def add(self, obj):
            pass

        def commit(self):
            raise SQLAlchemyError("disk full")

        def rollback(self):
            self.rolled_back = True

    db = _FailingDB()
    store = SimpleNamespace(id="store-1", access_token_enc=None, refresh_token_enc=None, token_expires_at=None)

    with pytest.raises(PersistenceError) as exc_info:
        store_tokens(db, store, access_token="a", refresh_token="r", expires_at=NOW)

    assert db.rolled_back is True
    assert exc_info.value.unit == "credentials"
