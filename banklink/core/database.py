import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .data_models import (
    AccountStatus,
    AuditLog,
    BalanceSnapshot,
    ConnectedAccount,
    Consent,
    ConsentStatus,
    Institution,
    StoredToken,
    Transaction,
    WebhookEvent,
)

DB_FILE = "banklink.db"
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Normalise datetimes to sortable UTC ISO strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return uuid.uuid4().hex


def get_db_connection(db_file: str = DB_FILE) -> sqlite3.Connection:
    """Open a connection to the bank-link database."""
    conn = sqlite3.connect(db_file)
    conn.row_factory = sqlite3.Row
    return conn


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS institutions (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        logo_url TEXT,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS consents (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        institution_id TEXT NOT NULL REFERENCES institutions(id),
        status TEXT NOT NULL,
        scopes TEXT NOT NULL DEFAULT '',
        consent_ref TEXT,
        state TEXT,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_consents_user ON consents(user_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_consents_ref ON consents(consent_ref);",
    """
    CREATE TABLE IF NOT EXISTS tokens (
        id TEXT PRIMARY KEY,
        consent_id TEXT NOT NULL UNIQUE REFERENCES consents(id),
        access_token TEXT NOT NULL,
        refresh_token TEXT,
        token_type TEXT NOT NULL,
        scope TEXT,
        expires_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS connected_accounts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        consent_id TEXT NOT NULL REFERENCES consents(id),
        remote_account_id TEXT NOT NULL,
        account_name TEXT NOT NULL,
        account_type TEXT,
        institution_name TEXT,
        masked_number TEXT,
        currency TEXT NOT NULL,
        balance REAL,
        available_balance REAL,
        status TEXT NOT NULL,
        last_sync_at TEXT,
        UNIQUE(user_id, remote_account_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS balances (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES connected_accounts(id),
        as_at TEXT NOT NULL,
        current REAL NOT NULL,
        available REAL,
        credit_limit REAL,
        currency TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES connected_accounts(id),
        dedup_key TEXT NOT NULL,
        remote_transaction_id TEXT,
        description TEXT NOT NULL,
        amount REAL NOT NULL,
        currency TEXT NOT NULL,
        transaction_type TEXT,
        category TEXT,
        merchant_name TEXT,
        posted_at TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        is_imported INTEGER NOT NULL DEFAULT 1,
        UNIQUE(account_id, dedup_key)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_posted ON transactions(account_id, posted_at);",
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}',
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    );
    """,
)


class BankLinkRepository(Protocol):
    """Storage operations the bank-link services depend on."""

    def get_or_create_institution(self, code: str, name: str, logo_url: Optional[str] = None) -> Institution: ...

    def get_institution(self, institution_id: str) -> Optional[Institution]: ...

    def create_consent(
        self,
        user_id: str,
        institution_id: str,
        scopes: Iterable[str],
        consent_ref: Optional[str],
        state: Optional[str],
        expires_at: Optional[datetime],
    ) -> Consent: ...

    def get_consent(self, consent_id: str) -> Optional[Consent]: ...

    def find_consent_by_correlation(self, reference: str) -> Optional[Consent]: ...

    def list_consents(self, user_id: str, statuses: Optional[Iterable[ConsentStatus]] = None) -> List[Consent]: ...

    def list_consents_by_status(self, statuses: Iterable[ConsentStatus]) -> List[Consent]: ...

    def find_expired_consents(self, now: datetime) -> List[Consent]: ...

    def update_consent_status_if(
        self, consent_id: str, expected: Iterable[ConsentStatus], new_status: ConsentStatus
    ) -> bool: ...

    def replace_token(
        self,
        consent_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_type: str,
        scope: Optional[str],
        expires_at: datetime,
    ) -> StoredToken: ...

    def get_token(self, consent_id: str) -> Optional[StoredToken]: ...

    def upsert_account(self, **fields: Any) -> ConnectedAccount: ...

    def get_account(self, account_id: str) -> Optional[ConnectedAccount]: ...

    def find_accounts_by_remote_id(self, remote_account_id: str) -> List[ConnectedAccount]: ...

    def list_accounts(self, user_id: str, status: Optional[AccountStatus] = None) -> List[ConnectedAccount]: ...

    def list_accounts_for_consent(self, consent_id: str) -> List[ConnectedAccount]: ...

    def update_account_balance(
        self,
        account_id: str,
        balance: Optional[float],
        available_balance: Optional[float] = None,
        currency: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None: ...

    def touch_account_sync(self, account_id: str, synced_at: Optional[datetime] = None) -> None: ...

    def set_account_status(self, account_id: str, status: AccountStatus) -> bool: ...

    def set_consent_accounts_status(self, consent_id: str, status: AccountStatus) -> int: ...

    def add_balance_snapshot(
        self,
        account_id: str,
        as_at: datetime,
        current: float,
        available: Optional[float],
        credit_limit: Optional[float],
        currency: str,
    ) -> BalanceSnapshot: ...

    def list_balance_snapshots(self, account_id: str) -> List[BalanceSnapshot]: ...

    def upsert_transaction(self, **fields: Any) -> bool: ...

    def has_remote_transaction(self, account_id: str, remote_transaction_id: str) -> bool: ...

    def list_transactions(self, account_id: str, limit: Optional[int] = None) -> List[Transaction]: ...

    def add_webhook_event(self, event_type: str, payload: str) -> WebhookEvent: ...

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]: ...

    def mark_webhook_processed(self, event_id: str) -> bool: ...

    def list_webhook_events(self, limit: int = 50, processed: Optional[bool] = None) -> List[WebhookEvent]: ...

    def add_audit_log(
        self,
        action: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog: ...

    def list_audit_logs(
        self, user_id: Optional[str] = None, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditLog]: ...


def _consent_from_row(row: sqlite3.Row) -> Consent:
    data = dict(row)
    data["scopes"] = [scope for scope in (data.get("scopes") or "").split(" ") if scope]
    return Consent(**data)


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    data = dict(row)
    data["metadata"] = json.loads(data.get("metadata") or "{}")
    return Transaction(**data)


def _audit_from_row(row: sqlite3.Row) -> AuditLog:
    data = dict(row)
    data["details"] = json.loads(data.get("details") or "{}")
    return AuditLog(**data)


class SQLiteRepository:
    """sqlite3-backed implementation of :class:`BankLinkRepository`."""

    def __init__(self, db_file: str = DB_FILE):
        self.db_file = db_file

    def connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def init_db(self) -> None:
        """Create all required tables if they are absent."""
        try:
            with self.connect() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
                conn.commit()
            logger.info("All database tables ensured in %s.", self.db_file)
        except sqlite3.Error as exc:
            logger.error("Database initialization failed: %s", exc)
            raise

    # Institutions

    def get_or_create_institution(self, code: str, name: str, logo_url: Optional[str] = None) -> Institution:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO institutions (id, code, name, logo_url, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(code) DO NOTHING
                """,
                (_new_id(), code, name, logo_url, _ts(utcnow())),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM institutions WHERE code = ?", (code,)).fetchone()
        return Institution(**dict(row))

    def get_institution(self, institution_id: str) -> Optional[Institution]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM institutions WHERE id = ?", (institution_id,)).fetchone()
        return Institution(**dict(row)) if row else None

    # Consents

    def create_consent(
        self,
        user_id: str,
        institution_id: str,
        scopes: Iterable[str],
        consent_ref: Optional[str],
        state: Optional[str],
        expires_at: Optional[datetime],
    ) -> Consent:
        consent_id = _new_id()
        now = _ts(utcnow())
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO consents (id, user_id, institution_id, status, scopes, consent_ref, state,
                                      expires_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    consent_id,
                    user_id,
                    institution_id,
                    ConsentStatus.PENDING.value,
                    " ".join(scopes),
                    consent_ref,
                    state,
                    _ts(expires_at),
                    now,
                    now,
                ),
            )
            conn.commit()
        consent = self.get_consent(consent_id)
        assert consent is not None
        return consent

    def get_consent(self, consent_id: str) -> Optional[Consent]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM consents WHERE id = ?", (consent_id,)).fetchone()
        return _consent_from_row(row) if row else None

    def find_consent_by_correlation(self, reference: str) -> Optional[Consent]:
        """Exact match on the aggregator consent id or the locally issued state."""
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM consents
                WHERE consent_ref = ? OR state = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (reference, reference),
            ).fetchone()
        return _consent_from_row(row) if row else None

    def list_consents(self, user_id: str, statuses: Optional[Iterable[ConsentStatus]] = None) -> List[Consent]:
        sql = "SELECT * FROM consents WHERE user_id = ?"
        params: List[Any] = [user_id]
        if statuses is not None:
            values = [ConsentStatus(status).value for status in statuses]
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at DESC"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_consent_from_row(row) for row in rows]

    def list_consents_by_status(self, statuses: Iterable[ConsentStatus]) -> List[Consent]:
        values = [ConsentStatus(status).value for status in statuses]
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM consents WHERE status IN ({', '.join('?' for _ in values)}) ORDER BY created_at",
                values,
            ).fetchall()
        return [_consent_from_row(row) for row in rows]

    def find_expired_consents(self, now: datetime) -> List[Consent]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM consents
                WHERE status IN (?, ?) AND expires_at IS NOT NULL AND expires_at < ?
                ORDER BY expires_at
                """,
                (ConsentStatus.ACTIVE.value, ConsentStatus.PENDING.value, _ts(now)),
            ).fetchall()
        return [_consent_from_row(row) for row in rows]

    def update_consent_status_if(
        self, consent_id: str, expected: Iterable[ConsentStatus], new_status: ConsentStatus
    ) -> bool:
        """Compare-and-set on consent status; returns True if the row moved."""
        values = [ConsentStatus(status).value for status in expected]
        with self.connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE consents SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({', '.join('?' for _ in values)})
                """,
                (ConsentStatus(new_status).value, _ts(utcnow()), consent_id, *values),
            )
            conn.commit()
            return cursor.rowcount > 0

    # Tokens

    def replace_token(
        self,
        consent_id: str,
        access_token: str,
        refresh_token: Optional[str],
        token_type: str,
        scope: Optional[str],
        expires_at: datetime,
    ) -> StoredToken:
        """Store the single token pair of a consent, overwriting any previous one."""
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO tokens (id, consent_id, access_token, refresh_token, token_type, scope, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(consent_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_type = excluded.token_type,
                    scope = excluded.scope,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (_new_id(), consent_id, access_token, refresh_token, token_type, scope, _ts(expires_at), _ts(utcnow())),
            )
            conn.commit()
        token = self.get_token(consent_id)
        assert token is not None
        return token

    def get_token(self, consent_id: str) -> Optional[StoredToken]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM tokens WHERE consent_id = ?", (consent_id,)).fetchone()
        return StoredToken(**dict(row)) if row else None

    # Connected accounts

    def upsert_account(
        self,
        *,
        user_id: str,
        consent_id: str,
        remote_account_id: str,
        account_name: str,
        account_type: Optional[str] = None,
        institution_name: Optional[str] = None,
        masked_number: Optional[str] = None,
        currency: str = "AUD",
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> ConnectedAccount:
        """Insert or refresh an account keyed by (user_id, remote_account_id).

        An account the user disconnected stays INACTIVE until a new consent
        links it again.
        """
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO connected_accounts (id, user_id, consent_id, remote_account_id, account_name, account_type,
                                                institution_name, masked_number, currency, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, remote_account_id) DO UPDATE SET
                    account_name = excluded.account_name,
                    account_type = excluded.account_type,
                    institution_name = COALESCE(excluded.institution_name, connected_accounts.institution_name),
                    masked_number = COALESCE(excluded.masked_number, connected_accounts.masked_number),
                    currency = excluded.currency,
                    status = CASE
                        WHEN connected_accounts.status = 'INACTIVE' AND connected_accounts.consent_id = excluded.consent_id
                            THEN connected_accounts.status
                        ELSE excluded.status
                    END,
                    consent_id = excluded.consent_id
                """,
                (
                    _new_id(),
                    user_id,
                    consent_id,
                    remote_account_id,
                    account_name,
                    account_type,
                    institution_name,
                    masked_number,
                    currency,
                    AccountStatus(status).value,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM connected_accounts WHERE user_id = ? AND remote_account_id = ?",
                (user_id, remote_account_id),
            ).fetchone()
        return ConnectedAccount(**dict(row))

    def get_account(self, account_id: str) -> Optional[ConnectedAccount]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM connected_accounts WHERE id = ?", (account_id,)).fetchone()
        return ConnectedAccount(**dict(row)) if row else None

    def find_accounts_by_remote_id(self, remote_account_id: str) -> List[ConnectedAccount]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM connected_accounts WHERE remote_account_id = ?",
                (remote_account_id,),
            ).fetchall()
        return [ConnectedAccount(**dict(row)) for row in rows]

    def list_accounts(self, user_id: str, status: Optional[AccountStatus] = None) -> List[ConnectedAccount]:
        sql = "SELECT * FROM connected_accounts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(AccountStatus(status).value)
        sql += " ORDER BY account_name"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ConnectedAccount(**dict(row)) for row in rows]

    def list_accounts_for_consent(self, consent_id: str) -> List[ConnectedAccount]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM connected_accounts WHERE consent_id = ? ORDER BY account_name",
                (consent_id,),
            ).fetchall()
        return [ConnectedAccount(**dict(row)) for row in rows]

    def update_account_balance(
        self,
        account_id: str,
        balance: Optional[float],
        available_balance: Optional[float] = None,
        currency: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE connected_accounts
                SET balance = ?,
                    available_balance = COALESCE(?, available_balance),
                    currency = COALESCE(?, currency),
                    last_sync_at = ?
                WHERE id = ?
                """,
                (balance, available_balance, currency, _ts(synced_at or utcnow()), account_id),
            )
            conn.commit()

    def touch_account_sync(self, account_id: str, synced_at: Optional[datetime] = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE connected_accounts SET last_sync_at = ? WHERE id = ?",
                (_ts(synced_at or utcnow()), account_id),
            )
            conn.commit()

    def set_account_status(self, account_id: str, status: AccountStatus) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE connected_accounts SET status = ? WHERE id = ?",
                (AccountStatus(status).value, account_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def set_consent_accounts_status(self, consent_id: str, status: AccountStatus) -> int:
        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE connected_accounts SET status = ? WHERE consent_id = ?",
                (AccountStatus(status).value, consent_id),
            )
            conn.commit()
            return cursor.rowcount

    # Balances

    def add_balance_snapshot(
        self,
        account_id: str,
        as_at: datetime,
        current: float,
        available: Optional[float],
        credit_limit: Optional[float],
        currency: str,
    ) -> BalanceSnapshot:
        snapshot = BalanceSnapshot(
            id=_new_id(),
            account_id=account_id,
            as_at=as_at,
            current=current,
            available=available,
            credit_limit=credit_limit,
            currency=currency,
            created_at=utcnow(),
        )
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO balances (id, account_id, as_at, current, available, credit_limit, currency, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.id,
                    account_id,
                    _ts(as_at),
                    current,
                    available,
                    credit_limit,
                    currency,
                    _ts(snapshot.created_at),
                ),
            )
            conn.commit()
        return snapshot

    def list_balance_snapshots(self, account_id: str) -> List[BalanceSnapshot]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM balances WHERE account_id = ? ORDER BY as_at",
                (account_id,),
            ).fetchall()
        return [BalanceSnapshot(**dict(row)) for row in rows]

    # Transactions

    def upsert_transaction(
        self,
        *,
        user_id: str,
        account_id: str,
        dedup_key: str,
        description: str,
        amount: float,
        currency: str,
        posted_at: datetime,
        remote_transaction_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        category: Optional[str] = None,
        merchant_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Insert or refresh one transaction keyed by (account_id, dedup_key).

        Returns True when a new row was created.
        """
        with self.connect() as conn:
            existing = conn.execute(
                "SELECT id FROM transactions WHERE account_id = ? AND dedup_key = ?",
                (account_id, dedup_key),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO transactions (id, user_id, account_id, dedup_key, remote_transaction_id, description, amount,
                                          currency, transaction_type, category, merchant_name, posted_at, metadata,
                                          is_imported)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(account_id, dedup_key) DO UPDATE SET
                    description = excluded.description,
                    amount = excluded.amount,
                    currency = excluded.currency,
                    transaction_type = excluded.transaction_type,
                    category = COALESCE(excluded.category, transactions.category),
                    merchant_name = COALESCE(excluded.merchant_name, transactions.merchant_name),
                    posted_at = excluded.posted_at,
                    metadata = excluded.metadata
                """,
                (
                    _new_id(),
                    user_id,
                    account_id,
                    dedup_key,
                    remote_transaction_id,
                    description,
                    amount,
                    currency,
                    transaction_type,
                    category,
                    merchant_name,
                    _ts(posted_at),
                    json.dumps(metadata or {}),
                ),
            )
            conn.commit()
        return existing is None

    def has_remote_transaction(self, account_id: str, remote_transaction_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM transactions WHERE account_id = ? AND remote_transaction_id = ? LIMIT 1",
                (account_id, remote_transaction_id),
            ).fetchone()
        return row is not None

    def list_transactions(self, account_id: str, limit: Optional[int] = None) -> List[Transaction]:
        sql = "SELECT * FROM transactions WHERE account_id = ? ORDER BY posted_at DESC"
        params: List[Any] = [account_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_transaction_from_row(row) for row in rows]

    # Webhook events

    def add_webhook_event(self, event_type: str, payload: str) -> WebhookEvent:
        event = WebhookEvent(id=_new_id(), event_type=event_type, payload=payload, processed=False, created_at=utcnow())
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO webhook_events (id, event_type, payload, processed, created_at) VALUES (?, ?, ?, 0, ?)",
                (event.id, event_type, payload, _ts(event.created_at)),
            )
            conn.commit()
        return event

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM webhook_events WHERE id = ?", (event_id,)).fetchone()
        return WebhookEvent(**dict(row)) if row else None

    def mark_webhook_processed(self, event_id: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute("UPDATE webhook_events SET processed = 1 WHERE id = ?", (event_id,))
            conn.commit()
            return cursor.rowcount > 0

    def list_webhook_events(self, limit: int = 50, processed: Optional[bool] = None) -> List[WebhookEvent]:
        sql = "SELECT * FROM webhook_events"
        params: List[Any] = []
        if processed is not None:
            sql += " WHERE processed = ?"
            params.append(1 if processed else 0)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [WebhookEvent(**dict(row)) for row in rows]

    # Audit log

    def add_audit_log(
        self,
        action: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            id=_new_id(),
            user_id=user_id,
            action=action,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, user_id, action, details, ip_address, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    user_id,
                    action,
                    json.dumps(entry.details, default=str),
                    ip_address,
                    user_agent,
                    _ts(entry.created_at),
                ),
            )
            conn.commit()
        return entry

    def list_audit_logs(
        self, user_id: Optional[str] = None, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditLog]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        sql = "SELECT * FROM audit_logs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_audit_from_row(row) for row in rows]
