"""Domain exceptions raised by the bank-link engine.

Every error carries the HTTP status and short code the API layer reports, so
services raise these and routers never need to translate by hand.
"""
from __future__ import annotations

from typing import Optional


class BankLinkError(Exception):
    """Base class for all bank-link failures."""

    http_status: int = 500
    code: str = "banklink_error"

    def __init__(self, message: str = "", *, http_status: Optional[int] = None):
        self.message = message or (self.__doc__ or self.code).strip()
        super().__init__(self.message)
        if http_status is not None:
            self.http_status = http_status


class TransientUpstream(BankLinkError):
    """Aggregator kept failing with retryable errors."""

    http_status = 503
    code = "transient_upstream"


class PermanentUpstreamRejection(BankLinkError):
    """Aggregator rejected the request with a non-retryable 4xx."""

    http_status = 502
    code = "upstream_rejected"

    def __init__(self, message: str = "", *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(BankLinkError):
    """Bank connection is temporarily unavailable, try again later."""

    http_status = 503
    code = "upstream_unavailable"


class TokenRefreshFailed(BankLinkError):
    """Access token could not be refreshed."""

    http_status = 401
    code = "token_refresh_failed"


class ConfigurationError(BankLinkError):
    """Bank integration is misconfigured."""

    http_status = 500
    code = "configuration_error"


class SignatureInvalid(BankLinkError):
    """Webhook signature does not match the payload."""

    http_status = 401
    code = "invalid_signature"


class ConsentNotFound(BankLinkError):
    """Consent not found."""

    http_status = 404
    code = "consent_not_found"


class ConsentStateConflict(BankLinkError):
    """Consent is not in a state that allows this transition."""

    http_status = 409
    code = "consent_state_conflict"


class AccountNotFound(BankLinkError):
    """Account not found."""

    http_status = 404
    code = "account_not_found"


class WebhookProcessingError(BankLinkError):
    """Webhook event could not be applied."""

    http_status = 500
    code = "webhook_processing_failed"
