"""Data models for the bank-link core: stored records and aggregator payloads."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConsentStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CLOSED = "CLOSED"


# Stored records


class Institution(BaseModel):
    id: str
    code: str
    name: str
    logo_url: Optional[str] = None
    created_at: Optional[datetime] = None


class Consent(BaseModel):
    """A user's authorization for the app to read one institution's data."""

    id: str
    user_id: str
    institution_id: str
    status: ConsentStatus
    scopes: List[str] = Field(default_factory=list)
    consent_ref: Optional[str] = None
    state: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StoredToken(BaseModel):
    """Encrypted OAuth token pair; one per consent."""

    id: str
    consent_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: datetime
    updated_at: Optional[datetime] = None


class ConnectedAccount(BaseModel):
    id: str
    user_id: str
    consent_id: str
    remote_account_id: str
    account_name: str
    account_type: Optional[str] = None
    institution_name: Optional[str] = None
    masked_number: Optional[str] = None
    currency: str = "AUD"
    balance: Optional[float] = None
    available_balance: Optional[float] = None
    status: AccountStatus = AccountStatus.ACTIVE
    last_sync_at: Optional[datetime] = None


class BalanceSnapshot(BaseModel):
    id: str
    account_id: str
    as_at: datetime
    current: float
    available: Optional[float] = None
    credit_limit: Optional[float] = None
    currency: str
    created_at: Optional[datetime] = None


class Transaction(BaseModel):
    """Represents a single ingested bank transaction."""

    id: str
    user_id: str
    account_id: str
    dedup_key: str
    remote_transaction_id: Optional[str] = None
    description: str
    amount: float
    currency: str
    transaction_type: Optional[str] = None
    category: Optional[str] = None
    merchant_name: Optional[str] = None
    posted_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_imported: bool = True


class WebhookEvent(BaseModel):
    id: str
    event_type: str
    payload: str
    processed: bool = False
    created_at: Optional[datetime] = None


class AuditLog(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None


# Aggregator payloads. Field names follow the aggregator's JSON.


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TokenResponse(_Payload):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    consent_id: Optional[str] = None


class ConsentSession(_Payload):
    consentId: str
    redirectUrl: str
    state: Optional[str] = None
    nonce: Optional[str] = None


class RemoteInstitution(_Payload):
    id: str
    name: str
    logoUrl: Optional[str] = None


class RemoteAccount(_Payload):
    accountId: str
    accountName: str
    accountType: Optional[str] = None
    productCategory: Optional[str] = None
    bankName: Optional[str] = None
    accountNumber: Optional[str] = None
    maskedNumber: Optional[str] = None
    currency: str = "AUD"
    status: str = "OPEN"


class RemoteBalance(_Payload):
    accountId: Optional[str] = None
    current: float
    available: Optional[float] = None
    creditLimit: Optional[float] = None
    currency: str = "AUD"
    asAt: Optional[datetime] = None


class RemoteTransaction(_Payload):
    transactionId: Optional[str] = None
    accountId: Optional[str] = None
    description: str = ""
    amount: float
    currency: str = "AUD"
    postedAt: datetime
    type: Optional[str] = None
    category: Optional[str] = None
    merchantName: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class TransactionPage(_Payload):
    transactions: List[RemoteTransaction] = Field(default_factory=list)
    nextPage: Optional[str] = None
    totalCount: Optional[int] = None


class RemoteConsentStatus(_Payload):
    status: str
    expiresAt: Optional[datetime] = None
