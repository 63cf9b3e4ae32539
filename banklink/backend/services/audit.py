from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import Any, Dict, Optional

from banklink.core.database import BankLinkRepository

logger = logging.getLogger("banklink.backend.audit")

SYSTEM_IP = "system"


class AuditAction(str, Enum):
    """Lifecycle actions recorded in the audit log."""
    CONSENT_START = "CONSENT_START"
    CONSENT_START_FAILED = "CONSENT_START_FAILED"
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_CALLBACK_FAILED = "CONSENT_CALLBACK_FAILED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    CONSENT_EXPIRED = "CONSENT_EXPIRED"
    CONSENTS_VIEWED = "CONSENTS_VIEWED"
    CONSENT_DETAILS_VIEWED = "CONSENT_DETAILS_VIEWED"
    INITIAL_SYNC_START = "INITIAL_SYNC_START"
    INITIAL_SYNC_COMPLETE = "INITIAL_SYNC_COMPLETE"
    INITIAL_SYNC_FAILED = "INITIAL_SYNC_FAILED"
    INCREMENTAL_SYNC_START = "INCREMENTAL_SYNC_START"
    INCREMENTAL_SYNC_COMPLETE = "INCREMENTAL_SYNC_COMPLETE"
    INCREMENTAL_SYNC_FAILED = "INCREMENTAL_SYNC_FAILED"
    USER_SYNC_START = "USER_SYNC_START"
    USER_SYNC_COMPLETE = "USER_SYNC_COMPLETE"
    USER_SYNC_FAILED = "USER_SYNC_FAILED"
    ACCOUNT_SYNC_START = "ACCOUNT_SYNC_START"
    ACCOUNT_SYNC_COMPLETE = "ACCOUNT_SYNC_COMPLETE"
    ACCOUNT_SYNC_FAILED = "ACCOUNT_SYNC_FAILED"
    BACKGROUND_SYNC_FAILED = "BACKGROUND_SYNC_FAILED"
    ACCOUNT_CONNECTED = "ACCOUNT_CONNECTED"
    ACCOUNT_DISCONNECTED = "ACCOUNT_DISCONNECTED"


def record_audit(
    repository: BankLinkRepository,
    action: AuditAction,
    user_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = SYSTEM_IP,
    user_agent: Optional[str] = None,
) -> None:
    """Append an audit entry; a failing audit write never breaks the caller's flow."""
    try:
        repository.add_audit_log(
            action.value,
            user_id=user_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except sqlite3.Error as exc:
        logger.error("Failed to log audit event %s for user %s: %s", action.value, user_id, exc)
