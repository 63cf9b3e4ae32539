"""
Tests for the sync engine.

Test 1: initial sync stores accounts, balance snapshots and transactions
Test 2: re-running a sync never duplicates rows
Test 3: pagination walks every page
Test 4: one failing account never blocks the others
Test 5: timeouts and background supervision
Test 6: token refresh and garbled upstream bodies stay scoped to one consent
"""
import asyncio
from datetime import timedelta

import httpx
import pytest

from banklink.backend.services.audit import AuditAction
from banklink.backend.services.sync_engine import (
    SyncEngine,
    SyncResult,
    SyncStatus,
    transaction_dedup_key,
)
from banklink.backend.services.tokens import TokenManager
from banklink.core.data_models import AccountStatus, ConsentStatus, RemoteTransaction
from banklink.core.database import utcnow
from banklink.core.errors import AccountNotFound
from conftest import REDIRECT_URI, USER_ID, make_active_consent, remote_account, remote_transaction


def _count(repository, table):
    with repository.connect() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.mark.asyncio
async def test_initial_sync_stores_everything(engine, repository, fake_aggregator, active_consent):
    fake_aggregator.balances["acc-0001"] = [
        {"accountId": "acc-0001", "current": 50.0, "available": 40.0, "asAt": "2026-09-01T00:00:00+00:00"},
        {"accountId": "acc-0001", "current": 75.5, "available": 70.0, "asAt": "2026-09-02T00:00:00+00:00"},
    ]
    fake_aggregator.transaction_pages["acc-0001"] = [
        [remote_transaction("tx-1", -4.5), remote_transaction("tx-2", 1200.0, "Salary", day=2)]
    ]

    result = await engine.perform_initial_sync(active_consent.id)

    assert result.success
    assert (result.accounts_synced, result.balances_synced, result.transactions_synced) == (1, 2, 2)
    account = repository.list_accounts(USER_ID)[0]
    assert account.balance == 75.5
    assert account.available_balance == 70.0
    assert account.last_sync_at is not None
    assert len(repository.list_balance_snapshots(account.id)) == 2
    assert {tx.remote_transaction_id for tx in repository.list_transactions(account.id)} == {"tx-1", "tx-2"}

    transactions_request = fake_aggregator.calls("GET", "/accounts/acc-0001/transactions")[0]
    window = (
        transactions_request.url.params["toDate"],
        transactions_request.url.params["fromDate"],
    )
    assert window[0] > window[1]
    assert repository.list_audit_logs(action=AuditAction.INITIAL_SYNC_COMPLETE.value)[0].user_agent == "sync-service"


@pytest.mark.asyncio
async def test_resync_is_idempotent(engine, repository, fake_aggregator, active_consent):
    fake_aggregator.transaction_pages["acc-0001"] = [[remote_transaction("tx-1", -4.5), remote_transaction(None, -9.0)]]

    await engine.perform_initial_sync(active_consent.id)
    await engine.perform_incremental_sync(active_consent.id)

    assert _count(repository, "connected_accounts") == 1
    assert _count(repository, "transactions") == 2


@pytest.mark.asyncio
async def test_pagination_fetches_every_page(engine, repository, fake_aggregator, active_consent):
    fake_aggregator.transaction_pages["acc-0001"] = [
        [remote_transaction(f"tx-{page}-{i}", -1.0 * (i + 1)) for i in range(3)] for page in range(4)
    ]

    result = await engine.perform_initial_sync(active_consent.id)

    assert len(fake_aggregator.calls("GET", "/accounts/acc-0001/transactions")) == 4
    assert result.transactions_synced == 12
    assert _count(repository, "transactions") == 12


@pytest.mark.asyncio
async def test_one_failing_account_does_not_block_others(engine, repository, fake_aggregator, active_consent):
    fake_aggregator.accounts = [remote_account("acc-0001", "Everyday"), remote_account("acc-0002", "Savings")]
    fake_aggregator.transaction_pages["acc-0001"] = [[remote_transaction("tx-1", -4.5)]]
    fake_aggregator.fail("GET", "/accounts/acc-0002/balances", 404)

    result = await engine.perform_initial_sync(active_consent.id)

    assert not result.success
    assert result.accounts_synced == 2
    assert result.transactions_synced == 1
    assert len(result.errors) == 1 and result.errors[0].startswith("Account Savings:")
    synced = {a.remote_account_id: a for a in repository.list_accounts(USER_ID)}
    assert synced["acc-0001"].last_sync_at is not None
    assert synced["acc-0002"].last_sync_at is None
    assert repository.list_audit_logs(action=AuditAction.INITIAL_SYNC_FAILED.value)


@pytest.mark.asyncio
async def test_closed_accounts_are_stored_but_not_synced(engine, repository, fake_aggregator, active_consent):
    fake_aggregator.accounts = [remote_account("acc-0001", "Everyday"), remote_account("acc-0009", "Old", "CLOSED")]

    result = await engine.perform_initial_sync(active_consent.id)

    assert result.success
    statuses = {a.remote_account_id: a.status for a in repository.list_accounts(USER_ID)}
    assert statuses == {"acc-0001": AccountStatus.ACTIVE, "acc-0009": AccountStatus.CLOSED}
    assert fake_aggregator.calls("GET", "/accounts/acc-0009/balances") == []


@pytest.mark.asyncio
async def test_disconnected_account_stays_inactive_on_resync(engine, repository, fake_aggregator, active_consent):
    await engine.perform_initial_sync(active_consent.id)
    account = repository.list_accounts(USER_ID)[0]
    repository.set_account_status(account.id, AccountStatus.INACTIVE)

    await engine.perform_incremental_sync(active_consent.id)

    assert repository.get_account(account.id).status == AccountStatus.INACTIVE
    assert len(fake_aggregator.calls("GET", "/accounts/acc-0001/balances")) == 1


@pytest.mark.asyncio
async def test_sync_requires_active_consent(engine, repository, fake_aggregator, active_consent):
    repository.update_consent_status_if(active_consent.id, [ConsentStatus.ACTIVE], ConsentStatus.REVOKED)

    result = await engine.perform_incremental_sync(active_consent.id)

    assert not result.success
    assert "not ACTIVE" in result.errors[0]
    assert fake_aggregator.calls("GET", "/accounts") == []


@pytest.mark.asyncio
async def test_sync_account_checks_ownership(engine, repository, active_consent):
    await engine.perform_initial_sync(active_consent.id)
    account = repository.list_accounts(USER_ID)[0]

    with pytest.raises(AccountNotFound):
        await engine.sync_account("someone-else", account.id)

    result = await engine.sync_account(USER_ID, account.id)
    assert result.success and result.accounts_synced == 1


@pytest.mark.asyncio
async def test_user_sync_without_consents(engine):
    result = await engine.sync_user_accounts("nobody")

    assert not result.success
    assert result.errors == ["No active consents found for user"]


@pytest.mark.asyncio
async def test_user_sync_merges_consents(engine, active_consent):
    result = await engine.sync_user_accounts(USER_ID)

    assert result.success
    assert result.accounts_synced == 1


@pytest.mark.asyncio
async def test_timeout_reports_incomplete(repository, aggregator, tokens):
    engine = SyncEngine(repository, aggregator, tokens, timeout_seconds=0.01)

    async def _slow():
        await asyncio.sleep(1)

    result = await engine.run_with_timeout(_slow())

    assert not result.success
    assert result.errors == ["Sync incomplete, retry later"]


@pytest.mark.asyncio
async def test_supervisor_tracks_background_failures(supervisor, engine, repository, active_consent, monkeypatch):
    async def _boom(consent_id):
        raise RuntimeError("engine exploded")

    monkeypatch.setattr(engine, "perform_initial_sync", _boom)

    supervisor.schedule_initial_sync(active_consent.id, USER_ID)
    await supervisor.drain()

    run = supervisor.status(active_consent.id)
    assert run.status == SyncStatus.FAILED
    assert run.error == "engine exploded"
    assert supervisor.failures() == [run]
    assert supervisor.pending == 0
    assert repository.list_audit_logs(action=AuditAction.BACKGROUND_SYNC_FAILED.value)


def test_dedup_key_prefers_remote_id():
    with_id = RemoteTransaction.model_validate(remote_transaction("tx-9", -3.0))
    without_id = RemoteTransaction.model_validate(remote_transaction(None, -3.0, "  COFFEE "))
    same_fingerprint = RemoteTransaction.model_validate(remote_transaction(None, -3.0, "coffee"))

    assert transaction_dedup_key("acc", with_id) == "tx-9"
    assert transaction_dedup_key("acc", without_id).startswith("fp:")
    assert transaction_dedup_key("acc", without_id) == transaction_dedup_key("acc", same_fingerprint)
    assert transaction_dedup_key("acc", without_id) != transaction_dedup_key("other", same_fingerprint)


@pytest.mark.asyncio
async def test_refreshed_token_is_used_for_account_fetch(repository, aggregator, cipher, fake_aggregator, active_consent):
    later = utcnow() + timedelta(minutes=58)
    tokens = TokenManager(repository, aggregator, cipher, redirect_uri=REDIRECT_URI, clock=lambda: later)
    engine = SyncEngine(repository, aggregator, tokens, clock=lambda: later)

    result = await engine.perform_incremental_sync(active_consent.id)

    assert result.success
    assert len(fake_aggregator.calls("POST", "/oauth2/token")) == 1
    assert fake_aggregator.calls("GET", "/accounts")[0].headers["Authorization"] == "Bearer access-1"
    balances_request = fake_aggregator.calls("GET", "/accounts/acc-0001/balances")[0]
    assert balances_request.headers["Authorization"] == "Bearer access-1"


@pytest.mark.asyncio
async def test_refresh_failure_fails_only_its_consent(repository, aggregator, cipher, tokens, fake_aggregator):
    first = make_active_consent(repository, tokens, user_id=USER_ID)
    second = make_active_consent(repository, tokens, user_id="user-2")
    later = utcnow() + timedelta(minutes=58)
    shifted = TokenManager(repository, aggregator, cipher, redirect_uri=REDIRECT_URI, clock=lambda: later)
    engine = SyncEngine(repository, aggregator, shifted, clock=lambda: later)
    fake_aggregator.fail("POST", "/oauth2/token", 400)

    results = await engine.sync_all_active()

    assert set(results) == {first.id, second.id}
    assert [results[first.id].success, results[second.id].success] == [False, True]
    assert "Token refresh failed" in results[first.id].errors[0]
    assert len(repository.list_accounts("user-2")) == 1
    assert repository.list_accounts(USER_ID) == []
    assert repository.list_audit_logs(action=AuditAction.INCREMENTAL_SYNC_FAILED.value)


@pytest.mark.asyncio
async def test_garbled_accounts_body_fails_only_its_consent(engine, repository, tokens, fake_aggregator):
    first = make_active_consent(repository, tokens, user_id=USER_ID)
    second = make_active_consent(repository, tokens, user_id="user-2")
    fake_aggregator.fail("GET", "/accounts", httpx.Response(200, text="<html>maintenance</html>"))

    results = await engine.sync_all_active()

    assert not results[first.id].success
    assert "non-JSON" in results[first.id].errors[0]
    assert results[second.id].success
    assert len(repository.list_accounts("user-2")) == 1


@pytest.mark.asyncio
async def test_user_sync_reports_garbled_body_instead_of_raising(engine, fake_aggregator, active_consent):
    fake_aggregator.fail("GET", "/accounts", httpx.Response(200, text="Service Unavailable"))

    result = await engine.sync_user_accounts(USER_ID)

    assert not result.success
    assert len(result.errors) == 1


@pytest.mark.asyncio
async def test_unexpected_error_before_accounts_is_reported(engine, tokens, repository, active_consent, monkeypatch):
    async def _broken(consent_id):
        raise RuntimeError("token store unavailable")

    monkeypatch.setattr(tokens, "get_access_token", _broken)

    result = await engine.perform_incremental_sync(active_consent.id)

    assert not result.success
    assert result.errors == ["Unexpected error: token store unavailable"]
    assert repository.list_audit_logs(action=AuditAction.INCREMENTAL_SYNC_FAILED.value)


@pytest.mark.asyncio
async def test_rescheduled_sync_keeps_newer_task_tracked(supervisor, engine, active_consent, monkeypatch):
    gates = [asyncio.Event(), asyncio.Event()]
    started = []

    async def _gated(consent_id):
        gate = gates[len(started)]
        started.append(consent_id)
        await gate.wait()
        return SyncResult(success=True)

    monkeypatch.setattr(engine, "perform_initial_sync", _gated)

    first = supervisor.schedule_initial_sync(active_consent.id, USER_ID)
    second = supervisor.schedule_initial_sync(active_consent.id, USER_ID)
    while len(started) < 2:
        await asyncio.sleep(0)

    gates[0].set()
    await first
    await asyncio.sleep(0)

    assert supervisor.pending == 1
    assert not second.done()

    gates[1].set()
    await supervisor.drain()
    assert supervisor.pending == 0
    assert supervisor.status(active_consent.id).status == SyncStatus.COMPLETED
