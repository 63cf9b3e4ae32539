"""
Tests for token storage and refresh.

Test 1: tokens are encrypted at rest, one record per consent
Test 2: refresh inside the 5 minute margin, and only once for concurrent callers
Test 3: refresh failures surface as TokenRefreshFailed
"""
import asyncio
from datetime import timedelta

import pytest

from banklink.backend.services.tokens import TokenManager
from banklink.core.data_models import TokenResponse
from banklink.core.database import utcnow
from banklink.core.errors import TokenRefreshFailed
from conftest import REDIRECT_URI


def test_tokens_are_encrypted_at_rest(repository, tokens, active_consent):
    stored = repository.get_token(active_consent.id)

    assert stored.access_token != "access-0"
    assert stored.refresh_token != "refresh-0"
    assert "access-0" not in stored.access_token


def test_store_replaces_previous_pair(repository, tokens, active_consent):
    tokens.store_tokens(active_consent.id, TokenResponse(access_token="access-new", refresh_token="refresh-new"))

    with repository.connect() as conn:
        count = conn.execute("SELECT COUNT(*) FROM tokens WHERE consent_id = ?", (active_consent.id,)).fetchone()[0]
    assert count == 1


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(tokens, fake_aggregator, active_consent):
    access_token = await tokens.get_access_token(active_consent.id)

    assert access_token == "access-0"
    assert fake_aggregator.calls("POST", "/oauth2/token") == []


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed(repository, aggregator, cipher, fake_aggregator, active_consent):
    now = utcnow()
    # Stored token expires in 1 hour; a clock 58 minutes ahead leaves 2 minutes.
    manager = TokenManager(repository, aggregator, cipher, REDIRECT_URI, clock=lambda: now + timedelta(minutes=58))

    access_token = await manager.get_access_token(active_consent.id)

    assert access_token == "access-1"
    request = fake_aggregator.calls("POST", "/oauth2/token")[0]
    assert b"grant_type=refresh_token" in request.content
    assert b"refresh_token=refresh-0" in request.content
    stored = repository.get_token(active_consent.id)
    assert cipher.decrypt(stored.access_token) == "access-1"
    assert cipher.decrypt(stored.refresh_token) == "refresh-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(repository, aggregator, cipher, fake_aggregator, active_consent):
    now = utcnow()
    manager = TokenManager(repository, aggregator, cipher, REDIRECT_URI, clock=lambda: now + timedelta(minutes=58))

    results = await asyncio.gather(*(manager.get_access_token(active_consent.id) for _ in range(4)))

    assert set(results) == {"access-1"}
    assert len(fake_aggregator.calls("POST", "/oauth2/token")) == 1


def test_refresh_keeps_old_refresh_token_when_none_returned(repository, tokens, cipher, active_consent):
    stored = repository.get_token(active_consent.id)
    tokens.store_tokens(active_consent.id, TokenResponse(access_token="access-2"), keep_refresh_token=stored.refresh_token)

    assert cipher.decrypt(repository.get_token(active_consent.id).refresh_token) == "refresh-0"


@pytest.mark.asyncio
async def test_refresh_failure_raises(repository, aggregator, cipher, fake_aggregator, active_consent):
    fake_aggregator.fail("POST", "/oauth2/token", 400)
    now = utcnow()
    manager = TokenManager(repository, aggregator, cipher, REDIRECT_URI, clock=lambda: now + timedelta(hours=2))

    with pytest.raises(TokenRefreshFailed):
        await manager.get_access_token(active_consent.id)


@pytest.mark.asyncio
async def test_missing_token_raises(tokens):
    with pytest.raises(TokenRefreshFailed):
        await tokens.get_access_token("no-such-consent")
