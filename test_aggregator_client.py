"""
Tests for the resilient aggregator client.

Test 1: retry policy (5xx/429/transport retried, other 4xx not, at most 5 attempts)
Test 2: sandbox health flag (down on 503/transport, up on success)
Test 3: request shapes and payload parsing
Test 4: webhook signature validation
"""
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from banklink.core.aggregator_client import (
    CDR_SCOPES,
    INITIAL_BACKOFF_SECONDS,
    MAX_ATTEMPTS,
    MAX_BACKOFF_SECONDS,
    AggregatorClient,
    SandboxHealth,
)
from banklink.core.crypto import sign_payload
from banklink.core.errors import ConfigurationError, PermanentUpstreamRejection, TransientUpstream
from conftest import BASE_URL, WEBHOOK_SECRET


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds(aggregator, fake_aggregator, sleeps):
    fake_aggregator.fail("GET", "/accounts", 503, 502)

    accounts = await aggregator.get_accounts("token")

    assert [a.accountId for a in accounts] == ["acc-0001"]
    assert len(fake_aggregator.calls("GET", "/accounts")) == 3
    assert len(sleeps) == 2
    assert all(0 <= delay <= MAX_BACKOFF_SECONDS for delay in sleeps)
    # Full jitter: the wait after attempt n is at most 0.4 * 2**(n-1).
    assert all(delay <= INITIAL_BACKOFF_SECONDS * 2 ** i + 1e-9 for i, delay in enumerate(sleeps))


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(aggregator, fake_aggregator, sleeps):
    fake_aggregator.fail("GET", "/accounts", *([503] * 10))

    with pytest.raises(TransientUpstream):
        await aggregator.get_accounts("token")

    assert len(fake_aggregator.calls("GET", "/accounts")) == MAX_ATTEMPTS
    assert len(sleeps) == MAX_ATTEMPTS - 1
    assert max(sleeps) <= MAX_BACKOFF_SECONDS
    assert all(delay <= INITIAL_BACKOFF_SECONDS * 2 ** i + 1e-9 for i, delay in enumerate(sleeps))


@pytest.mark.asyncio
async def test_rate_limit_is_retried(aggregator, fake_aggregator):
    fake_aggregator.fail("GET", "/accounts", 429)

    await aggregator.get_accounts("token")

    assert len(fake_aggregator.calls("GET", "/accounts")) == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(aggregator, fake_aggregator, sleeps):
    fake_aggregator.fail("GET", "/accounts", 404)

    with pytest.raises(PermanentUpstreamRejection) as excinfo:
        await aggregator.get_accounts("token")

    assert excinfo.value.status_code == 404
    assert len(fake_aggregator.calls("GET", "/accounts")) == 1
    assert sleeps == []
    assert not aggregator.health.is_down


@pytest.mark.asyncio
async def test_transport_errors_are_retried_and_translated(aggregator, fake_aggregator):
    request = httpx.Request("GET", f"{BASE_URL}/accounts")
    fake_aggregator.fail("GET", "/accounts", *[httpx.ConnectError("refused", request=request) for _ in range(5)])

    with pytest.raises(TransientUpstream):
        await aggregator.get_accounts("token")

    assert len(fake_aggregator.calls("GET", "/accounts")) == MAX_ATTEMPTS
    assert aggregator.health.is_down


@pytest.mark.asyncio
async def test_token_exchange_is_single_attempt(aggregator, fake_aggregator, sleeps):
    fake_aggregator.fail("POST", "/oauth2/token", 503)

    with pytest.raises(TransientUpstream):
        await aggregator.exchange_code_for_token("code", "http://localhost/callback")

    assert len(fake_aggregator.calls("POST", "/oauth2/token")) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_health_flag_resets_on_success(aggregator, fake_aggregator):
    fake_aggregator.fail("GET", "/accounts", 503)

    await aggregator.get_accounts("token")

    status = aggregator.sandbox_status()
    assert status["is_down"] is False
    assert status["down_since"] is None
    assert status["last_change"] is not None


@pytest.mark.asyncio
async def test_health_flag_stays_down_after_exhausted_503s(aggregator, fake_aggregator):
    fake_aggregator.fail("GET", "/accounts", *([503] * MAX_ATTEMPTS))

    with pytest.raises(TransientUpstream):
        await aggregator.get_accounts("token")

    status = aggregator.sandbox_status()
    assert status["is_down"] is True
    assert status["estimated_recovery"].startswith("2-4 hours")


def test_estimated_recovery_grows_with_downtime():
    health = SandboxHealth()
    health.mark_down()
    since = health.status()["down_since"]

    assert health.status(now=since + timedelta(hours=3))["estimated_recovery"].startswith("4-6 hours")
    assert health.status(now=since + timedelta(hours=7))["estimated_recovery"].startswith("6-24 hours")

    health.mark_up()
    assert health.status()["estimated_recovery"] is None


@pytest.mark.asyncio
async def test_transactions_request_carries_window_and_cursor(aggregator, fake_aggregator):
    fake_aggregator.transaction_pages["acc-0001"] = [[], []]

    await aggregator.get_transactions(
        "token", "acc-0001", from_date=date(2026, 7, 1), to_date=date(2026, 9, 29), page_size=50, next_page="1"
    )

    request = fake_aggregator.calls("GET", "/accounts/acc-0001/transactions")[0]
    assert request.headers["Authorization"] == "Bearer token"
    assert request.url.params["pageSize"] == "50"
    assert request.url.params["fromDate"] == "2026-07-01"
    assert request.url.params["toDate"] == "2026-09-29"
    assert request.url.params["nextPage"] == "1"


@pytest.mark.asyncio
async def test_consent_session_and_authorize_url(aggregator, fake_aggregator):
    session = await aggregator.create_consent_session(CDR_SCOPES, "http://localhost/cb", "state-x", "nonce-x", 30)

    assert session.consentId == "remote-consent-1"
    body = fake_aggregator.calls("POST", "/consents")[0].read()
    assert b'"duration":30' in body.replace(b" ", b"")

    url = aggregator.build_authorize_url(CDR_SCOPES, "http://localhost/cb", "state-x", "nonce-x")
    assert url.startswith(f"{BASE_URL}/oauth2/authorize?")
    assert "state=state-x" in url


@pytest.mark.asyncio
async def test_institutions_are_cached(aggregator, fake_aggregator):
    first = await aggregator.get_institutions()
    second = await aggregator.get_institutions()

    assert first == second
    assert len(fake_aggregator.calls("GET", "/institutions")) == 1


@pytest.mark.asyncio
async def test_unexpected_payload_is_a_permanent_rejection(aggregator, fake_aggregator):
    fake_aggregator.accounts = [{"accountName": "missing id"}]

    with pytest.raises(PermanentUpstreamRejection):
        await aggregator.get_accounts("token")


@pytest.mark.asyncio
async def test_maintenance_page_is_a_permanent_rejection(aggregator, fake_aggregator, sleeps):
    fake_aggregator.fail(
        "GET", "/accounts", httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})
    )

    with pytest.raises(PermanentUpstreamRejection) as excinfo:
        await aggregator.get_accounts("token")

    assert excinfo.value.status_code == 200
    assert sleeps == []


@pytest.mark.asyncio
async def test_non_object_body_is_a_permanent_rejection(aggregator, fake_aggregator):
    fake_aggregator.fail("POST", "/oauth2/token", httpx.Response(200, json=["access-1"]))

    with pytest.raises(PermanentUpstreamRejection):
        await aggregator.refresh_token("refresh-0")


@pytest.mark.asyncio
async def test_consent_status_lookup(aggregator, fake_aggregator):
    fake_aggregator.remote_consent_status = {"status": "REVOKED", "expiresAt": "2027-01-01T00:00:00+00:00"}

    remote = await aggregator.get_consent_status("remote-consent-1")

    assert remote.status == "REVOKED"
    assert remote.expiresAt == datetime(2027, 1, 1, tzinfo=timezone.utc)
    request = fake_aggregator.calls("GET", "/consents/remote-consent-1")[0]
    assert request.headers["Authorization"].startswith("Basic ")


def test_webhook_signature_validation(aggregator):
    payload = b'{"eventType":"account.connected"}'

    assert aggregator.validate_webhook_signature(payload, sign_payload(WEBHOOK_SECRET, payload))
    assert not aggregator.validate_webhook_signature(payload, sign_payload("other-secret", payload))
    assert not aggregator.validate_webhook_signature(payload, None)


def test_missing_credentials_are_rejected():
    with pytest.raises(ConfigurationError):
        AggregatorClient(BASE_URL, "", "secret")


def test_health_timestamps_are_utc():
    health = SandboxHealth()
    health.mark_down()
    assert health.status()["down_since"].tzinfo == timezone.utc
    assert isinstance(health.status()["down_since"], datetime)
