from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from banklink.core.aggregator_client import DEFAULT_CONSENT_DURATION_DAYS


# Consent schemas
class ConsentStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    duration_days: int = Field(default=DEFAULT_CONSENT_DURATION_DAYS, alias="durationDays")


class ConsentStartResponse(BaseModel):
    consentId: str
    redirectUrl: str
    state: str
    nonce: str


class ConsentRevokeResponse(BaseModel):
    consent_id: str
    status: str


# Sync schemas
class SyncResultResponse(BaseModel):
    success: bool
    accounts_synced: int = 0
    balances_synced: int = 0
    transactions_synced: int = 0
    errors: List[str] = Field(default_factory=list)


# Webhook schemas
class WebhookAck(BaseModel):
    received: bool = True
    event_id: str


class WebhookEventOut(BaseModel):
    id: str
    event_type: str
    processed: bool
    created_at: Optional[datetime] = None
    payload: str
