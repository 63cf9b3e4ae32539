from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from banklink.core.aggregator_client import AggregatorClient
from banklink.core.crypto import TokenCipher
from banklink.core.data_models import StoredToken, TokenResponse
from banklink.core.database import BankLinkRepository, utcnow
from banklink.core.errors import BankLinkError, TokenRefreshFailed

logger = logging.getLogger("banklink.backend.tokens")

REFRESH_MARGIN = timedelta(minutes=5)


class TokenManager:
    """Keeps exactly one encrypted token pair per consent and refreshes it on demand."""

    def __init__(
        self,
        repository: BankLinkRepository,
        client: AggregatorClient,
        cipher: TokenCipher,
        redirect_uri: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._client = client
        self._cipher = cipher
        self._redirect_uri = redirect_uri
        self._clock = clock
        # Concurrent account syncs of one consent share a single refresh.
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def store_tokens(self, consent_id: str, response: TokenResponse, keep_refresh_token: Optional[str] = None) -> StoredToken:
        """Encrypt and persist a token response, replacing the consent's previous record.

        ``keep_refresh_token`` is the already-encrypted refresh token to retain
        when the aggregator does not return a new one.
        """
        refresh_token = self._cipher.encrypt_optional(response.refresh_token) or keep_refresh_token
        return self._repository.replace_token(
            consent_id,
            access_token=self._cipher.encrypt(response.access_token),
            refresh_token=refresh_token,
            token_type=response.token_type,
            scope=response.scope,
            expires_at=self._clock() + timedelta(seconds=response.expires_in),
        )

    async def exchange_code(self, consent_id: str, code: str) -> StoredToken:
        response = await self._client.exchange_code_for_token(code, self._redirect_uri)
        stored = self.store_tokens(consent_id, response)
        logger.info("Stored tokens for consent %s (expires_at=%s)", consent_id, stored.expires_at.isoformat())
        return stored

    def needs_refresh(self, token: StoredToken) -> bool:
        return token.expires_at - self._clock() < REFRESH_MARGIN

    async def get_usable_token(self, token: StoredToken) -> str:
        """Return a plaintext access token, refreshing it first when it is about to expire."""
        if not self.needs_refresh(token):
            return self._cipher.decrypt(token.access_token)

        if not token.refresh_token:
            raise TokenRefreshFailed(f"Consent {token.consent_id} has no refresh token.")

        logger.info("Access token for consent %s expires at %s; refreshing", token.consent_id, token.expires_at.isoformat())
        try:
            response = await self._client.refresh_token(self._cipher.decrypt(token.refresh_token))
        except BankLinkError as exc:
            logger.error("Token refresh failed for consent %s: %s", token.consent_id, exc)
            raise TokenRefreshFailed(f"Token refresh failed for consent {token.consent_id}.") from exc

        self.store_tokens(token.consent_id, response, keep_refresh_token=token.refresh_token)
        return response.access_token

    async def get_access_token(self, consent_id: str) -> str:
        """Load the consent's token record and return a usable access token."""
        async with self._locks[consent_id]:
            token = self._repository.get_token(consent_id)
            if token is None:
                raise TokenRefreshFailed(f"No token stored for consent {consent_id}.")
            return await self.get_usable_token(token)

    def forget(self, consent_id: str) -> None:
        """Drop the refresh lock of a consent that will not sync again."""
        lock = self._locks.get(consent_id)
        if lock is not None and not lock.locked():
            del self._locks[consent_id]
