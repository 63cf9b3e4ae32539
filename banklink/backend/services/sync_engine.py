"""
Sync Engine - синхронизация счетов, балансов и транзакций с агрегатором.

Основные функции:
- perform_initial_sync: полная синхронизация после выдачи согласия (90 дней)
- perform_incremental_sync: периодическая синхронизация (7 дней)
- sync_user_accounts / sync_account: синхронизация по запросу пользователя
- SyncSupervisor: фоновые задачи с отслеживанием результата
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from banklink.core.aggregator_client import DEFAULT_PAGE_SIZE, AggregatorClient
from banklink.core.data_models import (
    AccountStatus,
    ConnectedAccount,
    Consent,
    ConsentStatus,
    RemoteAccount,
    RemoteTransaction,
)
from banklink.core.database import BankLinkRepository, utcnow
from banklink.core.errors import AccountNotFound, BankLinkError

from .audit import AuditAction, record_audit
from .tokens import TokenManager

logger = logging.getLogger("banklink.backend.sync_engine")

INITIAL_SYNC_DAYS = 90
INCREMENTAL_SYNC_DAYS = 7
SYNC_USER_AGENT = "sync-service"


class SyncStatus(str, Enum):
    """Статусы синхронизации."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncResult:
    success: bool = False
    accounts_synced: int = 0
    balances_synced: int = 0
    transactions_synced: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.accounts_synced += other.accounts_synced
        self.balances_synced += other.balances_synced
        self.transactions_synced += other.transactions_synced
        self.errors.extend(other.errors)

    def counts(self) -> Dict[str, int]:
        return {
            "accountsSynced": self.accounts_synced,
            "balancesSynced": self.balances_synced,
            "transactionsSynced": self.transactions_synced,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def transaction_dedup_key(account_id: str, transaction: RemoteTransaction) -> str:
    """Stable natural key: the remote id, or a fingerprint when the aggregator sends none."""
    if transaction.transactionId:
        return transaction.transactionId
    material = "|".join(
        [
            account_id,
            transaction.description.strip().lower(),
            f"{transaction.amount:.2f}",
            transaction.postedAt.date().isoformat(),
        ]
    )
    return "fp:" + hashlib.sha256(material.encode()).hexdigest()


def store_remote_transaction(
    repository: BankLinkRepository, account: ConnectedAccount, transaction: RemoteTransaction
) -> bool:
    """Upsert one remote transaction into the account; returns True if it was new."""
    return repository.upsert_transaction(
        user_id=account.user_id,
        account_id=account.id,
        dedup_key=transaction_dedup_key(account.id, transaction),
        remote_transaction_id=transaction.transactionId,
        description=transaction.description,
        amount=transaction.amount,
        currency=transaction.currency,
        transaction_type=transaction.type,
        category=transaction.category,
        merchant_name=transaction.merchantName,
        posted_at=transaction.postedAt,
        metadata=transaction.metadata,
    )


def _account_status(remote: RemoteAccount) -> AccountStatus:
    return AccountStatus.CLOSED if remote.status.upper() == "CLOSED" else AccountStatus.ACTIVE


class SyncEngine:
    """Reconciles aggregator accounts, balances and transactions into storage."""

    def __init__(
        self,
        repository: BankLinkRepository,
        client: AggregatorClient,
        tokens: TokenManager,
        *,
        max_concurrency: int = 4,
        timeout_seconds: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._client = client
        self._tokens = tokens
        self._max_concurrency = max(1, max_concurrency)
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def _audit(self, action: AuditAction, user_id: Optional[str], details: Dict[str, Any]) -> None:
        record_audit(self._repository, action, user_id, details, user_agent=SYNC_USER_AGENT)

    async def perform_initial_sync(self, consent_id: str) -> SyncResult:
        return await self._sync_consent(
            consent_id,
            INITIAL_SYNC_DAYS,
            (AuditAction.INITIAL_SYNC_START, AuditAction.INITIAL_SYNC_COMPLETE, AuditAction.INITIAL_SYNC_FAILED),
        )

    async def perform_incremental_sync(self, consent_id: str) -> SyncResult:
        return await self._sync_consent(
            consent_id,
            INCREMENTAL_SYNC_DAYS,
            (
                AuditAction.INCREMENTAL_SYNC_START,
                AuditAction.INCREMENTAL_SYNC_COMPLETE,
                AuditAction.INCREMENTAL_SYNC_FAILED,
            ),
        )

    async def _sync_consent(
        self, consent_id: str, days: int, actions: Tuple[AuditAction, AuditAction, AuditAction]
    ) -> SyncResult:
        start_action, complete_action, failed_action = actions
        result = SyncResult()
        consent = self._repository.get_consent(consent_id)
        if consent is None:
            result.errors.append(f"Consent {consent_id} not found")
            logger.warning("Sync requested for unknown consent %s", consent_id)
            return result

        self._audit(start_action, consent.user_id, {"consentId": consent_id, "windowDays": days})
        if consent.status != ConsentStatus.ACTIVE:
            result.errors.append(f"Consent {consent_id} is {consent.status.value}, not ACTIVE")
            self._audit(failed_action, consent.user_id, {"consentId": consent_id, "error": result.errors[-1]})
            return result

        try:
            access_token = await self._tokens.get_access_token(consent_id)
            remote_accounts = await self._client.get_accounts(access_token)
        except BankLinkError as exc:
            logger.error("Sync of consent %s aborted: %s", consent_id, exc)
            result.errors.append(str(exc))
            self._audit(failed_action, consent.user_id, {"consentId": consent_id, "error": str(exc)})
            return result
        except Exception as exc:  # noqa: BLE001
            logger.exception("Sync of consent %s crashed before fetching accounts", consent_id)
            result.errors.append(f"Unexpected error: {exc}")
            self._audit(failed_action, consent.user_id, {"consentId": consent_id, "error": result.errors[-1]})
            return result

        accounts = self._upsert_accounts(consent, remote_accounts, result)
        result.accounts_synced = len(accounts)
        targets = [account for account in accounts if account.status == AccountStatus.ACTIVE]
        await self._sync_accounts(consent, targets, days, result)

        result.success = not result.errors
        details = {"consentId": consent_id, **result.counts()}
        if result.success:
            self._audit(complete_action, consent.user_id, details)
        else:
            self._audit(failed_action, consent.user_id, {**details, "errors": result.errors})
        logger.info(
            "Sync of consent %s finished (success=%s, accounts=%d, balances=%d, transactions=%d, errors=%d)",
            consent_id,
            result.success,
            result.accounts_synced,
            result.balances_synced,
            result.transactions_synced,
            len(result.errors),
        )
        return result

    def _upsert_accounts(
        self, consent: Consent, remote_accounts: List[RemoteAccount], result: SyncResult
    ) -> List[ConnectedAccount]:
        institution = self._repository.get_institution(consent.institution_id)
        accounts: List[ConnectedAccount] = []
        for remote in remote_accounts:
            try:
                accounts.append(
                    self._repository.upsert_account(
                        user_id=consent.user_id,
                        consent_id=consent.id,
                        remote_account_id=remote.accountId,
                        account_name=remote.accountName,
                        account_type=remote.accountType or remote.productCategory,
                        institution_name=remote.bankName or (institution.name if institution else None),
                        masked_number=remote.maskedNumber,
                        currency=remote.currency,
                        status=_account_status(remote),
                    )
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to store account %s", remote.accountId)
                result.errors.append(f"Account {remote.accountName}: {exc}")
        return accounts

    async def _sync_accounts(
        self, consent: Consent, accounts: List[ConnectedAccount], days: int, result: SyncResult
    ) -> None:
        """Sync balances and transactions of every account; one failure never cancels siblings."""
        if not accounts:
            return
        semaphore = asyncio.Semaphore(self._max_concurrency)
        to_date = self._clock().date()
        from_date = to_date - timedelta(days=days)

        async def _bounded(account: ConnectedAccount) -> Tuple[int, int]:
            async with semaphore:
                return await self._sync_account_data(consent.id, account, from_date, to_date)

        # Параллельная синхронизация счетов, ошибки собираем, а не прерываем остальные
        outcomes = await asyncio.gather(*(_bounded(account) for account in accounts), return_exceptions=True)
        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Error syncing account %s: %s", account.remote_account_id, outcome)
                result.errors.append(f"Account {account.account_name}: {outcome}")
                continue
            balances, transactions = outcome
            result.balances_synced += balances
            result.transactions_synced += transactions

    async def _sync_account_data(self, consent_id: str, account: ConnectedAccount, from_date, to_date) -> Tuple[int, int]:
        access_token = await self._tokens.get_access_token(consent_id)
        balances = await self._sync_balances(access_token, account)
        transactions = await self._sync_transactions(access_token, account, from_date, to_date)
        self._repository.touch_account_sync(account.id, self._clock())
        return balances, transactions

    async def _sync_balances(self, access_token: str, account: ConnectedAccount) -> int:
        balances = await self._client.get_account_balances(access_token, account.remote_account_id)
        now = self._clock()
        for balance in balances:
            self._repository.add_balance_snapshot(
                account.id,
                as_at=balance.asAt or now,
                current=balance.current,
                available=balance.available,
                credit_limit=balance.creditLimit,
                currency=balance.currency,
            )
        if balances:
            latest = max(balances, key=lambda item: item.asAt or now)
            self._repository.update_account_balance(
                account.id,
                latest.current,
                available_balance=latest.available,
                currency=latest.currency,
                synced_at=now,
            )
        return len(balances)

    async def _sync_transactions(self, access_token: str, account: ConnectedAccount, from_date, to_date) -> int:
        """Walk every page until the aggregator stops returning a cursor."""
        synced = 0
        next_page: Optional[str] = None
        page_num = 1
        while True:
            page = await self._client.get_transactions(
                access_token,
                account.remote_account_id,
                from_date=from_date,
                to_date=to_date,
                page_size=DEFAULT_PAGE_SIZE,
                next_page=next_page,
            )
            for transaction in page.transactions:
                store_remote_transaction(self._repository, account, transaction)
                synced += 1
            logger.debug(
                "Pagination checkpoint account=%s page=%d next=%s", account.remote_account_id, page_num, page.nextPage
            )
            if not page.nextPage:
                return synced
            next_page = page.nextPage
            page_num += 1

    async def sync_user_accounts(self, user_id: str) -> SyncResult:
        """Incremental sync of every active consent of the user."""
        result = SyncResult()
        self._audit(AuditAction.USER_SYNC_START, user_id, {})
        consents = self._repository.list_consents(user_id, statuses=[ConsentStatus.ACTIVE])
        if not consents:
            result.errors.append("No active consents found for user")
            self._audit(AuditAction.USER_SYNC_FAILED, user_id, {"error": result.errors[0]})
            return result

        for consent in consents:
            result.merge(await self.perform_incremental_sync(consent.id))

        result.success = not result.errors
        action = AuditAction.USER_SYNC_COMPLETE if result.success else AuditAction.USER_SYNC_FAILED
        details: Dict[str, Any] = {"consents": len(consents), **result.counts()}
        if result.errors:
            details["errors"] = result.errors
        self._audit(action, user_id, details)
        return result

    async def sync_account(self, user_id: str, account_id: str) -> SyncResult:
        """Incremental sync of a single connected account owned by the user."""
        account = self._repository.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise AccountNotFound(f"Account {account_id} not found")

        result = SyncResult()
        self._audit(AuditAction.ACCOUNT_SYNC_START, user_id, {"accountId": account_id})
        consent = self._repository.get_consent(account.consent_id)
        if consent is None or consent.status != ConsentStatus.ACTIVE:
            result.errors.append(f"Account {account.account_name}: consent is not active")
        elif account.status != AccountStatus.ACTIVE:
            result.errors.append(f"Account {account.account_name}: account is {account.status.value}")
        else:
            await self._sync_accounts(consent, [account], INCREMENTAL_SYNC_DAYS, result)
            result.accounts_synced = 1

        result.success = not result.errors
        action = AuditAction.ACCOUNT_SYNC_COMPLETE if result.success else AuditAction.ACCOUNT_SYNC_FAILED
        details: Dict[str, Any] = {"accountId": account_id, **result.counts()}
        if result.errors:
            details["errors"] = result.errors
        self._audit(action, user_id, details)
        return result

    async def sync_all_active(self) -> Dict[str, SyncResult]:
        """Periodic job: incremental sync of every ACTIVE consent, one consent at a time."""
        results: Dict[str, SyncResult] = {}
        for consent in self._repository.list_consents_by_status([ConsentStatus.ACTIVE]):
            try:
                results[consent.id] = await self.run_with_timeout(self.perform_incremental_sync(consent.id))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Periodic sync of consent %s crashed", consent.id)
                results[consent.id] = SyncResult(success=False, errors=[str(exc)])
        return results

    async def run_with_timeout(self, operation: Awaitable[SyncResult]) -> SyncResult:
        """Bound a sync run; a timeout means "incomplete, retry later", never corruption."""
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Sync exceeded %.1fs and was cancelled", self.timeout_seconds)
            return SyncResult(success=False, errors=["Sync incomplete, retry later"])


@dataclass
class BackgroundSync:
    consent_id: str
    user_id: str
    status: SyncStatus = SyncStatus.QUEUED
    result: Optional[SyncResult] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consent_id": self.consent_id,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class SyncSupervisor:
    """Runs initial syncs as tracked background tasks.

    The HTTP callback returns immediately; the outcome of each run stays
    queryable by consent id, and failures are logged and audited rather than
    lost with the task.
    """

    def __init__(self, engine: SyncEngine, repository: BankLinkRepository):
        self._engine = engine
        self._repository = repository
        self._tasks: Dict[str, asyncio.Task] = {}
        self._runs: Dict[str, BackgroundSync] = {}

    def schedule_initial_sync(self, consent_id: str, user_id: str) -> asyncio.Task:
        run = BackgroundSync(consent_id=consent_id, user_id=user_id)
        self._runs[consent_id] = run
        task = asyncio.create_task(self._run(run), name=f"initial-sync-{consent_id}")
        self._tasks[consent_id] = task

        def _discard(done: asyncio.Task) -> None:
            # A newer run for the same consent may already own the slot.
            if self._tasks.get(consent_id) is done:
                del self._tasks[consent_id]

        task.add_done_callback(_discard)
        logger.info("Scheduled initial sync for consent %s", consent_id)
        return task

    async def _run(self, run: BackgroundSync) -> None:
        run.status = SyncStatus.RUNNING
        run.started_at = utcnow()
        try:
            run.result = await self._engine.run_with_timeout(self._engine.perform_initial_sync(run.consent_id))
            run.status = SyncStatus.COMPLETED if run.result.success else SyncStatus.FAILED
            if run.result.errors:
                run.error = "; ".join(run.result.errors)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Background sync crashed for consent %s", run.consent_id)
            run.status = SyncStatus.FAILED
            run.error = str(exc)
            record_audit(
                self._repository,
                AuditAction.BACKGROUND_SYNC_FAILED,
                run.user_id,
                {"consentId": run.consent_id, "error": str(exc)},
                user_agent=SYNC_USER_AGENT,
            )
        finally:
            run.finished_at = utcnow()

    def status(self, consent_id: str) -> Optional[BackgroundSync]:
        return self._runs.get(consent_id)

    def failures(self) -> List[BackgroundSync]:
        return [run for run in self._runs.values() if run.status == SyncStatus.FAILED]

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding background sync (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
