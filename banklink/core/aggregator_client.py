import asyncio
import logging
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type, TypeVar
from urllib.parse import urlencode

import httpx
from cachetools import TTLCache
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from .crypto import verify_signature
from .data_models import (
    ConsentSession,
    RemoteAccount,
    RemoteBalance,
    RemoteConsentStatus,
    RemoteInstitution,
    TokenResponse,
    TransactionPage,
)
from .errors import ConfigurationError, PermanentUpstreamRejection, TransientUpstream

logger = logging.getLogger(__name__)
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=5.0)

MAX_ATTEMPTS = 5
INITIAL_BACKOFF_SECONDS = 0.4
MAX_BACKOFF_SECONDS = 8.0
DEFAULT_PAGE_SIZE = 100
DEFAULT_CONSENT_DURATION_DAYS = 180

CDR_SCOPES = [
    "bank:accounts.basic:read",
    "bank:transactions:read",
    "bank:balances:read",
    "offline_access",
]

# Connection-level failures: refused, reset, DNS, timeouts.
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)
CORRELATION_HEADERS = ("x-correlation-id", "x-correlationid")

ModelT = TypeVar("ModelT", bound=BaseModel)
SleepFn = Callable[[float], Awaitable[None]]


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _is_retryable(exc: BaseException) -> bool:
    """Retry on transport errors, HTTP 429 and 5xx. Never on other 4xx."""
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_retryable_status(exc.response.status_code)
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


def _correlation_id(response: Optional[httpx.Response], fallback: str) -> str:
    if response is not None:
        for header in CORRELATION_HEADERS:
            value = response.headers.get(header)
            if value:
                return value
    return fallback


class SandboxHealth:
    """Advisory up/down flag for the aggregator, shared by every call.

    Writes go through a lock; readers only see it through ``is_down`` and
    ``status()``. It never blocks calls, it only reports.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._down = False
        self._down_since: Optional[datetime] = None
        self._last_change: Optional[datetime] = None

    @property
    def is_down(self) -> bool:
        with self._lock:
            return self._down

    def mark_down(self) -> None:
        with self._lock:
            if not self._down:
                now = datetime.now(timezone.utc)
                self._down = True
                self._down_since = now
                self._last_change = now
                logger.warning("Aggregator appears to be down or experiencing issues")

    def mark_up(self) -> None:
        with self._lock:
            if self._down:
                self._down = False
                self._down_since = None
                self._last_change = datetime.now(timezone.utc)
                logger.info("Aggregator responded successfully; clearing down flag")

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        with self._lock:
            down, down_since, last_change = self._down, self._down_since, self._last_change

        payload: Dict[str, Any] = {
            "is_down": down,
            "down_since": down_since,
            "last_change": last_change,
            "estimated_recovery": None,
        }
        if down and down_since is not None:
            elapsed = (now or datetime.now(timezone.utc)) - down_since
            if elapsed < timedelta(hours=2):
                payload["estimated_recovery"] = "2-4 hours (typical maintenance window)"
            elif elapsed < timedelta(hours=6):
                payload["estimated_recovery"] = "4-6 hours (extended maintenance)"
            else:
                payload["estimated_recovery"] = "6-24 hours (unusual downtime, contact support)"
        return payload


class AggregatorClient:
    """Resilient client for the open-banking aggregator API."""

    def __init__(
        self,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        *,
        auth_url: Optional[str] = None,
        authorize_url: Optional[str] = None,
        partner_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        health: Optional[SandboxHealth] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        sleep: Optional[SleepFn] = None,
        cache: Optional[TTLCache] = None,
    ):
        if not all([api_base_url, client_id, client_secret]):
            raise ConfigurationError("api_base_url, client_id and client_secret are required.")

        self.api_base_url = api_base_url.rstrip("/")
        self.client_id = client_id
        self._client_secret = client_secret
        self.auth_url = auth_url or f"{self.api_base_url}/oauth2/token"
        self.authorize_url = authorize_url or f"{self.api_base_url}/oauth2/authorize"
        self.partner_id = partner_id
        self._webhook_secret = webhook_secret or client_secret
        self.health = health or SandboxHealth()
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._client = httpx.AsyncClient(
            base_url=self.api_base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._cache: TTLCache = cache if cache is not None else TTLCache(maxsize=8, ttl=300)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=wait_random_exponential(multiplier=INITIAL_BACKOFF_SECONDS, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )

    async def _send(self, operation: str, chain_id: str, attempt: int, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Single HTTP attempt; records sandbox health and logs a correlation id."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except RETRYABLE_EXCEPTIONS as exc:
            self.health.mark_down()
            logger.warning(
                "%s attempt %d failed: %s (correlation_id=%s)",
                operation,
                attempt,
                exc.__class__.__name__,
                chain_id,
            )
            raise

        correlation_id = _correlation_id(response, chain_id)
        if response.is_success:
            self.health.mark_up()
            logger.info(
                "%s succeeded status=%s attempt=%d correlation_id=%s",
                operation,
                response.status_code,
                attempt,
                correlation_id,
            )
            return response

        if response.status_code == 503:
            self.health.mark_down()
        logger.warning(
            "%s attempt %d failed status=%s correlation_id=%s will_retry=%s",
            operation,
            attempt,
            response.status_code,
            correlation_id,
            _is_retryable_status(response.status_code) and attempt < MAX_ATTEMPTS,
        )
        response.raise_for_status()
        return response

    async def _request(self, operation: str, method: str, url: str, *, retry: bool = True, **kwargs: Any) -> httpx.Response:
        # One locally generated id per chain, used whenever the upstream sends none.
        chain_id = uuid.uuid4().hex
        try:
            if not retry:
                return await self._send(operation, chain_id, 1, method, url, **kwargs)

            response: Optional[httpx.Response] = None
            async for attempt in self._retrying():
                with attempt:
                    response = await self._send(
                        operation, chain_id, attempt.retry_state.attempt_number, method, url, **kwargs
                    )
            assert response is not None
            return response
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if _is_retryable_status(status_code):
                raise TransientUpstream(f"{operation} failed with HTTP {status_code}") from exc
            raise PermanentUpstreamRejection(
                f"{operation} rejected with HTTP {status_code}", status_code=status_code
            ) from exc
        except httpx.TransportError as exc:
            raise TransientUpstream(f"{operation} failed: {exc.__class__.__name__}") from exc

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Dict[str, Any]:
        """Decode a success body; maintenance pages and non-object bodies are rejections."""
        try:
            data = response.json()
        except ValueError as exc:
            logger.error(
                "%s returned a non-JSON body (content-type=%s)", operation, response.headers.get("content-type")
            )
            raise PermanentUpstreamRejection(
                f"{operation} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            logger.error("%s returned %s instead of an object", operation, type(data).__name__)
            raise PermanentUpstreamRejection(
                f"{operation} returned an unexpected payload", status_code=response.status_code
            )
        return data

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.error("%s returned an unexpected payload: %s", operation, exc)
            raise PermanentUpstreamRejection(f"{operation} returned an unexpected payload") from exc

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.client_id, self._client_secret)

    async def get_institutions(self) -> List[RemoteInstitution]:
        cached = self._cache.get("institutions")
        if cached is not None:
            return cached
        response = await self._request("getInstitutions", "GET", "/institutions")
        items = self._json(response, "getInstitutions").get("institutions", [])
        institutions = [self._parse(RemoteInstitution, item, "getInstitutions") for item in items]
        self._cache["institutions"] = institutions
        return institutions

    async def create_consent_session(
        self,
        scopes: Sequence[str],
        redirect_uri: str,
        state: str,
        nonce: str,
        duration_days: int = DEFAULT_CONSENT_DURATION_DAYS,
    ) -> ConsentSession:
        body = {
            "scopes": " ".join(scopes),
            "redirect_uri": redirect_uri,
            "state": state,
            "nonce": nonce,
            "duration": duration_days,
            "client_id": self.client_id,
            "partner_id": self.partner_id,
        }
        response = await self._request("createConsentSession", "POST", "/consents", json=body)
        session = self._parse(ConsentSession, self._json(response, "createConsentSession"), "createConsentSession")
        logger.info("Created consent session %s", session.consentId)
        return session

    def build_authorize_url(self, scopes: Sequence[str], redirect_uri: str, state: str, nonce: str) -> str:
        """Static authorize URL used when no consent session could be created."""
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(scopes),
                "state": state,
                "nonce": nonce,
            }
        )
        return f"{self.authorize_url}?{query}"

    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> TokenResponse:
        response = await self._request(
            "exchangeCodeForToken",
            "POST",
            self.auth_url,
            retry=False,
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            auth=self._basic_auth(),
        )
        logger.info("Exchanged authorization code for access token")
        return self._parse(TokenResponse, self._json(response, "exchangeCodeForToken"), "exchangeCodeForToken")

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        response = await self._request(
            "refreshToken",
            "POST",
            self.auth_url,
            retry=False,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=self._basic_auth(),
        )
        logger.info("Refreshed access token")
        return self._parse(TokenResponse, self._json(response, "refreshToken"), "refreshToken")

    async def get_accounts(self, access_token: str) -> List[RemoteAccount]:
        response = await self._request("getAccounts", "GET", "/accounts", headers=self._bearer(access_token))
        items = self._json(response, "getAccounts").get("accounts", [])
        accounts = [self._parse(RemoteAccount, item, "getAccounts") for item in items]
        logger.info("Retrieved %d accounts from aggregator", len(accounts))
        return accounts

    async def get_account_balances(self, access_token: str, account_id: str) -> List[RemoteBalance]:
        response = await self._request(
            "getAccountBalances",
            "GET",
            f"/accounts/{account_id}/balances",
            headers=self._bearer(access_token),
        )
        items = self._json(response, "getAccountBalances").get("balances", [])
        return [self._parse(RemoteBalance, item, "getAccountBalances") for item in items]

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        next_page: Optional[str] = None,
    ) -> TransactionPage:
        params: Dict[str, Any] = {"pageSize": page_size}
        if from_date:
            params["fromDate"] = from_date.isoformat()
        if to_date:
            params["toDate"] = to_date.isoformat()
        if next_page:
            params["nextPage"] = next_page

        response = await self._request(
            "getTransactions",
            "GET",
            f"/accounts/{account_id}/transactions",
            headers=self._bearer(access_token),
            params=params,
        )
        page = self._parse(TransactionPage, self._json(response, "getTransactions"), "getTransactions")
        logger.info("Retrieved %d transactions for account %s", len(page.transactions), account_id)
        return page

    async def revoke_consent(self, consent_ref: str) -> None:
        await self._request("revokeConsent", "DELETE", f"/consents/{consent_ref}", auth=self._basic_auth())
        logger.info("Revoked consent %s at aggregator", consent_ref)

    async def get_consent_status(self, consent_ref: str) -> RemoteConsentStatus:
        response = await self._request("getConsentStatus", "GET", f"/consents/{consent_ref}", auth=self._basic_auth())
        return self._parse(RemoteConsentStatus, self._json(response, "getConsentStatus"), "getConsentStatus")

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return verify_signature(self._webhook_secret, payload, signature)

    def sandbox_status(self) -> Dict[str, Any]:
        return self.health.status()

    async def aclose(self) -> None:
        """Dispose the underlying HTTP client."""
        await self._client.aclose()
