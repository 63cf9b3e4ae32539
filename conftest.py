"""Shared fixtures: a scripted aggregator behind httpx.MockTransport and a temp SQLite store."""
from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest

from banklink.backend.services.consents import ConsentService
from banklink.backend.services.sync_engine import SyncEngine, SyncSupervisor
from banklink.backend.services.tokens import TokenManager
from banklink.core.aggregator_client import CDR_SCOPES, AggregatorClient
from banklink.core.crypto import TokenCipher
from banklink.core.data_models import Consent, ConsentStatus, TokenResponse
from banklink.core.database import SQLiteRepository, utcnow

BASE_URL = "https://aggregator.test"
REDIRECT_URI = "http://localhost:8000/api/consents/callback"
WEBHOOK_SECRET = "whsec-test"
USER_ID = "user-1"


def remote_account(account_id: str, name: str, status: str = "OPEN") -> Dict[str, Any]:
    return {
        "accountId": account_id,
        "accountName": name,
        "accountType": "TRANSACTION",
        "bankName": "Test Bank",
        "maskedNumber": f"xxxx{account_id[-4:]}",
        "currency": "AUD",
        "status": status,
    }


def remote_transaction(tx_id: Optional[str], amount: float, description: str = "Coffee", day: int = 1) -> Dict[str, Any]:
    return {
        "transactionId": tx_id,
        "description": description,
        "amount": amount,
        "currency": "AUD",
        "postedAt": f"2026-09-{day:02d}T10:00:00+00:00",
        "type": "DEBIT" if amount < 0 else "CREDIT",
    }


class FakeAggregator:
    """Scripted aggregator API. Records every request it receives."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.accounts: List[Dict[str, Any]] = [remote_account("acc-0001", "Everyday")]
        self.balances: Dict[str, List[Dict[str, Any]]] = {}
        self.transaction_pages: Dict[str, List[List[Dict[str, Any]]]] = {}
        # (method, path) -> queued status codes, responses or exceptions served before the normal answer
        self.failures: Dict[Tuple[str, str], List[Any]] = {}
        self.token_expires_in = 3600
        self.issued_tokens = 0
        self.consent_ref = "remote-consent-1"
        self.remote_consent_status: Dict[str, Any] = {"status": "ACTIVE", "expiresAt": "2027-04-01T00:00:00+00:00"}
        self.headers: Dict[str, str] = {}

    def fail(self, method: str, path: str, *outcomes: Any) -> None:
        self.failures.setdefault((method, path), []).extend(outcomes)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        queued = self.failures.get(key)
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, httpx.Response):
                return outcome
            return httpx.Response(outcome, json={"error": "scripted"}, headers=self.headers)

        path = request.url.path
        if key == ("POST", "/oauth2/token"):
            return self._token(request)
        if key == ("POST", "/consents"):
            return httpx.Response(
                201,
                json={"consentId": self.consent_ref, "redirectUrl": f"{BASE_URL}/connect/{self.consent_ref}"},
            )
        if request.method == "DELETE" and path.startswith("/consents/"):
            return httpx.Response(204)
        if request.method == "GET" and path.startswith("/consents/"):
            return httpx.Response(200, json=self.remote_consent_status)
        if key == ("GET", "/institutions"):
            return httpx.Response(200, json={"institutions": [{"id": "inst-1", "name": "Test Bank"}]})
        if key == ("GET", "/accounts"):
            return httpx.Response(200, json={"accounts": self.accounts}, headers=self.headers)
        if path.startswith("/accounts/") and path.endswith("/balances"):
            account_id = path.split("/")[2]
            balances = self.balances.get(account_id, [{"accountId": account_id, "current": 100.0, "available": 90.0}])
            return httpx.Response(200, json={"balances": balances})
        if path.startswith("/accounts/") and path.endswith("/transactions"):
            account_id = path.split("/")[2]
            pages = self.transaction_pages.get(account_id, [[]])
            index = int(request.url.params.get("nextPage", "0"))
            body: Dict[str, Any] = {"transactions": pages[index]}
            if index + 1 < len(pages):
                body["nextPage"] = str(index + 1)
            return httpx.Response(200, json=body)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "authorization_code" and form.get("code") == "bad-code":
            return httpx.Response(400, json={"error": "invalid_grant"})
        self.issued_tokens += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.issued_tokens}",
                "refresh_token": f"refresh-{self.issued_tokens}",
                "token_type": "Bearer",
                "expires_in": self.token_expires_in,
            },
        )


def webhook_body(event_type: str, data: Dict[str, Any]) -> bytes:
    return json.dumps({"eventType": event_type, "data": data}).encode()


@pytest.fixture
def fake_aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def aggregator(fake_aggregator, sleeps) -> AggregatorClient:
    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return AggregatorClient(
        BASE_URL,
        "client-id",
        "client-secret",
        webhook_secret=WEBHOOK_SECRET,
        transport=httpx.MockTransport(fake_aggregator),
        sleep=_record_sleep,
    )


@pytest.fixture
def repository(tmp_path) -> SQLiteRepository:
    repo = SQLiteRepository(str(tmp_path / "banklink.db"))
    repo.init_db()
    return repo


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def tokens(repository, aggregator, cipher) -> TokenManager:
    return TokenManager(repository, aggregator, cipher, redirect_uri=REDIRECT_URI)


@pytest.fixture
def engine(repository, aggregator, tokens) -> SyncEngine:
    return SyncEngine(repository, aggregator, tokens, max_concurrency=2, timeout_seconds=5)


@pytest.fixture
def supervisor(engine, repository) -> SyncSupervisor:
    return SyncSupervisor(engine, repository)


@pytest.fixture
def consent_service(repository, aggregator, tokens, supervisor) -> ConsentService:
    return ConsentService(
        repository,
        aggregator,
        tokens,
        supervisor,
        redirect_uri=REDIRECT_URI,
        institution_code="AUS-CDR-Mastercard",
        institution_name="Mastercard Open Banking",
    )


@pytest.fixture
def active_consent(repository, tokens) -> Consent:
    return make_active_consent(repository, tokens)


def make_active_consent(repository: SQLiteRepository, tokens: TokenManager, user_id: str = USER_ID) -> Consent:
    """An ACTIVE consent with a fresh stored token pair, built without the OAuth round trip."""
    institution = repository.get_or_create_institution("AUS-CDR-Mastercard", "Mastercard Open Banking")
    consent = repository.create_consent(
        user_id,
        institution.id,
        CDR_SCOPES,
        consent_ref="remote-consent-1",
        state="state-1",
        expires_at=utcnow() + timedelta(days=180),
    )
    tokens.store_tokens(consent.id, TokenResponse(access_token="access-0", refresh_token="refresh-0"))
    repository.update_consent_status_if(consent.id, [ConsentStatus.PENDING], ConsentStatus.ACTIVE)
    return repository.get_consent(consent.id)
