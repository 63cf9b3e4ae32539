from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from banklink.core.aggregator_client import CDR_SCOPES, DEFAULT_CONSENT_DURATION_DAYS, AggregatorClient
from banklink.core.crypto import random_hex
from banklink.core.data_models import AccountStatus, Consent, ConsentStatus
from banklink.core.database import BankLinkRepository, utcnow
from banklink.core.errors import (
    BankLinkError,
    ConfigurationError,
    ConsentNotFound,
    ConsentStateConflict,
    PermanentUpstreamRejection,
    TransientUpstream,
    UpstreamUnavailable,
)

from .audit import AuditAction, record_audit
from .sync_engine import SyncSupervisor
from .tokens import TokenManager

logger = logging.getLogger("banklink.backend.consents")

MAX_CONSENT_DURATION_DAYS = 365

ALLOWED_TRANSITIONS: Dict[ConsentStatus, frozenset] = {
    ConsentStatus.PENDING: frozenset({ConsentStatus.ACTIVE, ConsentStatus.REVOKED, ConsentStatus.EXPIRED}),
    ConsentStatus.ACTIVE: frozenset({ConsentStatus.REVOKED, ConsentStatus.EXPIRED}),
    ConsentStatus.REVOKED: frozenset(),
    ConsentStatus.EXPIRED: frozenset(),
}


# Aggregator consent statuses that end the consent locally.
REMOTE_STATUS_MAP: Dict[str, ConsentStatus] = {
    "REVOKED": ConsentStatus.REVOKED,
    "CANCELLED": ConsentStatus.REVOKED,
    "EXPIRED": ConsentStatus.EXPIRED,
}


def can_transition(current: ConsentStatus, target: ConsentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: ConsentStatus) -> List[ConsentStatus]:
    """States from which ``target`` is reachable."""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


@dataclass
class ConsentStartResult:
    consent_id: str
    redirect_url: str
    state: str
    nonce: str


@dataclass
class CallbackOutcome:
    success: bool
    consent_id: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

    def frontend_redirect(self, frontend_url: str) -> str:
        base = f"{frontend_url.rstrip('/')}/connect-bank"
        if self.success:
            return f"{base}?{urlencode({'success': 'true', 'consentId': self.consent_id})}"
        params = {"error": self.error or "callback_failed"}
        if self.message:
            params["message"] = self.message
        return f"{base}?{urlencode(params)}"


class ConsentService:
    """Consent state machine: PENDING -> ACTIVE -> {REVOKED, EXPIRED}."""

    def __init__(
        self,
        repository: BankLinkRepository,
        client: AggregatorClient,
        tokens: TokenManager,
        supervisor: SyncSupervisor,
        *,
        redirect_uri: str,
        institution_code: str,
        institution_name: str,
        institution_logo_url: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._client = client
        self._tokens = tokens
        self._supervisor = supervisor
        self._redirect_uri = redirect_uri
        self._institution_code = institution_code
        self._institution_name = institution_name
        self._institution_logo_url = institution_logo_url
        self._clock = clock

    async def start_consent(
        self,
        user_id: str,
        duration_days: int = DEFAULT_CONSENT_DURATION_DAYS,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ConsentStartResult:
        if duration_days < 1 or duration_days > MAX_CONSENT_DURATION_DAYS:
            raise ConfigurationError(
                f"Consent duration must be between 1 and {MAX_CONSENT_DURATION_DAYS} days.",
                http_status=400,
            )

        institution = self._repository.get_or_create_institution(
            self._institution_code, self._institution_name, self._institution_logo_url
        )
        state = random_hex(32)
        nonce = random_hex(32)

        used_fallback = False
        try:
            session = await self._client.create_consent_session(
                CDR_SCOPES, self._redirect_uri, state, nonce, duration_days
            )
            consent_ref, redirect_url = session.consentId, session.redirectUrl
        except TransientUpstream as exc:
            if self._client.health.is_down:
                logger.error("Consent start for user %s failed, aggregator is down: %s", user_id, exc)
                record_audit(
                    self._repository,
                    AuditAction.CONSENT_START_FAILED,
                    user_id,
                    {"reason": "upstream_unavailable"},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                raise UpstreamUnavailable(
                    "The bank connection service is temporarily unavailable. Please try again later."
                ) from exc
            logger.warning("Consent session creation failed (%s); using static authorize URL", exc)
            consent_ref, used_fallback = state, True
            redirect_url = self._client.build_authorize_url(CDR_SCOPES, self._redirect_uri, state, nonce)
        except PermanentUpstreamRejection as exc:
            if exc.status_code in (401, 403):
                logger.error("Aggregator rejected integration credentials (HTTP %s)", exc.status_code)
                raise ConfigurationError(
                    "The bank integration is misconfigured. Please contact support."
                ) from exc
            logger.warning("Consent session rejected (%s); using static authorize URL", exc)
            consent_ref, used_fallback = state, True
            redirect_url = self._client.build_authorize_url(CDR_SCOPES, self._redirect_uri, state, nonce)

        consent = self._repository.create_consent(
            user_id,
            institution.id,
            CDR_SCOPES,
            consent_ref=consent_ref,
            state=state,
            expires_at=self._clock() + timedelta(days=duration_days),
        )
        record_audit(
            self._repository,
            AuditAction.CONSENT_START,
            user_id,
            {
                "consentId": consent.id,
                "institution": institution.code,
                "durationDays": duration_days,
                "scopes": CDR_SCOPES,
                "fallbackRedirect": used_fallback,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Started consent %s for user %s (fallback=%s)", consent.id, user_id, used_fallback)
        return ConsentStartResult(consent_id=consent.id, redirect_url=redirect_url, state=state, nonce=nonce)

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> CallbackOutcome:
        """Complete the OAuth redirect. Never raises; failures leave the consent PENDING."""
        if error:
            logger.warning("Aggregator returned callback error %s: %s", error, error_description)
            return CallbackOutcome(success=False, error=error, message=error_description)
        if not code or not state:
            return CallbackOutcome(success=False, error="missing_parameters")

        try:
            consent = await self._activate(code, state)
        except BankLinkError as exc:
            logger.warning("Consent callback failed for state %s...: %s", state[:8], exc)
            consent = self._repository.find_consent_by_correlation(state)
            record_audit(
                self._repository,
                AuditAction.CONSENT_CALLBACK_FAILED,
                consent.user_id if consent else None,
                {"consentId": consent.id if consent else None, "error": exc.code},
            )
            return CallbackOutcome(success=False, consent_id=consent.id if consent else None, error=exc.code)
        except Exception:  # noqa: BLE001
            logger.exception("Consent callback crashed for state %s...", state[:8])
            consent = self._repository.find_consent_by_correlation(state)
            record_audit(
                self._repository,
                AuditAction.CONSENT_CALLBACK_FAILED,
                consent.user_id if consent else None,
                {"consentId": consent.id if consent else None, "error": "callback_failed"},
            )
            return CallbackOutcome(success=False, consent_id=consent.id if consent else None, error="callback_failed")

        self._supervisor.schedule_initial_sync(consent.id, consent.user_id)
        return CallbackOutcome(success=True, consent_id=consent.id)

    async def _activate(self, code: str, state: str) -> Consent:
        consent = self._repository.find_consent_by_correlation(state)
        if consent is None:
            raise ConsentNotFound("No consent matches the callback state.")
        if consent.status != ConsentStatus.PENDING:
            raise ConsentStateConflict(f"Consent {consent.id} is already {consent.status.value}.")

        await self._tokens.exchange_code(consent.id, code)
        if not self._repository.update_consent_status_if(consent.id, [ConsentStatus.PENDING], ConsentStatus.ACTIVE):
            raise ConsentStateConflict(f"Consent {consent.id} changed state during activation.")

        record_audit(
            self._repository,
            AuditAction.CONSENT_GRANTED,
            consent.user_id,
            {"consentId": consent.id, "scopes": consent.scopes},
        )
        logger.info("Consent %s is now ACTIVE for user %s", consent.id, consent.user_id)
        activated = self._repository.get_consent(consent.id)
        assert activated is not None
        return activated

    def _owned_consent(self, consent_id: str, user_id: str) -> Consent:
        consent = self._repository.get_consent(consent_id)
        if consent is None or consent.user_id != user_id:
            raise ConsentNotFound(f"Consent {consent_id} not found.")
        return consent

    async def revoke(
        self,
        consent_id: str,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Consent:
        consent = self._owned_consent(consent_id, user_id)
        if consent.status == ConsentStatus.REVOKED:
            return consent
        if not can_transition(consent.status, ConsentStatus.REVOKED):
            raise ConsentStateConflict(f"Consent {consent_id} is {consent.status.value} and cannot be revoked.")

        if consent.consent_ref:
            try:
                await self._client.revoke_consent(consent.consent_ref)
            except BankLinkError as exc:
                logger.warning("Remote revoke of consent %s failed, revoking locally: %s", consent_id, exc)

        if not self._repository.update_consent_status_if(
            consent_id, sources_for(ConsentStatus.REVOKED), ConsentStatus.REVOKED
        ):
            current = self._repository.get_consent(consent_id)
            if current is None or current.status != ConsentStatus.REVOKED:
                raise ConsentStateConflict(f"Consent {consent_id} changed state during revoke.")

        deactivated = self._repository.set_consent_accounts_status(consent_id, AccountStatus.INACTIVE)
        self._tokens.forget(consent_id)
        record_audit(
            self._repository,
            AuditAction.CONSENT_REVOKED,
            user_id,
            {"consentId": consent_id, "accountsDeactivated": deactivated},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Revoked consent %s for user %s", consent_id, user_id)
        revoked = self._repository.get_consent(consent_id)
        assert revoked is not None
        return revoked

    async def reconcile_remote_status(self, consent_id: str, user_id: str) -> Dict[str, Any]:
        """Ask the aggregator for the consent's status and apply a remote revoke or expiry locally.

        Terminal local states are left alone; an ACTIVE remote status never
        reactivates anything.
        """
        consent = self._owned_consent(consent_id, user_id)
        if not consent.consent_ref:
            raise ConsentStateConflict(f"Consent {consent_id} has no aggregator reference.")

        remote = await self._client.get_consent_status(consent.consent_ref)
        target = REMOTE_STATUS_MAP.get(remote.status.upper())
        changed = False
        if target is not None and can_transition(consent.status, target):
            changed = self._repository.update_consent_status_if(consent_id, sources_for(target), target)
        if changed:
            self._tokens.forget(consent_id)
            if target == ConsentStatus.REVOKED:
                deactivated = self._repository.set_consent_accounts_status(consent_id, AccountStatus.INACTIVE)
                record_audit(
                    self._repository,
                    AuditAction.CONSENT_REVOKED,
                    user_id,
                    {"consentId": consent_id, "accountsDeactivated": deactivated, "source": "aggregator"},
                )
            else:
                record_audit(
                    self._repository,
                    AuditAction.CONSENT_EXPIRED,
                    user_id,
                    {"consentId": consent_id, "expiresAt": remote.expiresAt, "source": "aggregator"},
                )
            logger.info("Consent %s is %s at the aggregator; applied locally", consent_id, remote.status)

        current = self._repository.get_consent(consent_id)
        assert current is not None
        return {
            "consent_id": consent_id,
            "status": current.status.value,
            "remote_status": remote.status,
            "remote_expires_at": remote.expiresAt,
            "changed": changed,
        }

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire every ACTIVE/PENDING consent past its expiry; one bad record never stops the batch."""
        now = now or self._clock()
        expired = 0
        for consent in self._repository.find_expired_consents(now):
            try:
                if not self._repository.update_consent_status_if(
                    consent.id, sources_for(ConsentStatus.EXPIRED), ConsentStatus.EXPIRED
                ):
                    continue
                self._tokens.forget(consent.id)
                record_audit(
                    self._repository,
                    AuditAction.CONSENT_EXPIRED,
                    consent.user_id,
                    {"consentId": consent.id, "expiresAt": consent.expires_at},
                )
                expired += 1
            except Exception:  # noqa: BLE001
                logger.exception("Failed to expire consent %s", consent.id)
        if expired:
            logger.info("Expired %d consents", expired)
        return expired

    def _summary(self, consent: Consent) -> Dict[str, Any]:
        institution = self._repository.get_institution(consent.institution_id)
        accounts = self._repository.list_accounts_for_consent(consent.id)
        return {
            "id": consent.id,
            "status": consent.status.value,
            "scopes": consent.scopes,
            "expires_at": consent.expires_at,
            "created_at": consent.created_at,
            "institution": {
                "id": institution.id,
                "code": institution.code,
                "name": institution.name,
                "logo_url": institution.logo_url,
            }
            if institution
            else None,
            "accounts": [
                {
                    "id": account.id,
                    "account_name": account.account_name,
                    "account_type": account.account_type,
                    "masked_number": account.masked_number,
                    "status": account.status.value,
                    "balance": account.balance,
                    "currency": account.currency,
                    "last_sync_at": account.last_sync_at,
                }
                for account in accounts
            ],
        }

    def list_consents(self, user_id: str) -> List[Dict[str, Any]]:
        consents = self._repository.list_consents(user_id)
        record_audit(self._repository, AuditAction.CONSENTS_VIEWED, user_id, {"count": len(consents)}, ip_address=None)
        return [self._summary(consent) for consent in consents]

    def get_consent(self, consent_id: str, user_id: str) -> Dict[str, Any]:
        consent = self._owned_consent(consent_id, user_id)
        record_audit(
            self._repository, AuditAction.CONSENT_DETAILS_VIEWED, user_id, {"consentId": consent_id}, ip_address=None
        )
        return self._summary(consent)

    def sandbox_status(self) -> Dict[str, Any]:
        return self._client.sandbox_status()
