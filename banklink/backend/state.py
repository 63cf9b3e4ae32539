from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from cachetools import TTLCache
from fastapi import Request

from banklink.core.aggregator_client import AggregatorClient, SleepFn
from banklink.core.crypto import TokenCipher
from banklink.core.database import BankLinkRepository, SQLiteRepository

from .auth import JWTVerifier
from .config import Settings, settings
from .services.accounts import AccountService
from .services.consents import ConsentService
from .services.housekeeping import Housekeeper
from .services.sync_engine import SyncEngine, SyncSupervisor
from .services.tokens import TokenManager
from .services.webhooks import WebhookIngestor

logger = logging.getLogger("banklink.backend.state")

# Shared cache for expensive aggregator calls.
api_cache: TTLCache[str, Any] = TTLCache(maxsize=settings.api_cache_size, ttl=settings.api_cache_ttl)


@dataclass
class ServiceContainer:
    """Everything the routers need, wired once per application."""

    settings: Settings
    repository: BankLinkRepository
    client: AggregatorClient
    cipher: TokenCipher
    verifier: JWTVerifier
    tokens: TokenManager
    sync: SyncEngine
    supervisor: SyncSupervisor
    consents: ConsentService
    accounts: AccountService
    webhooks: WebhookIngestor
    housekeeper: Housekeeper

    async def aclose(self) -> None:
        await self.housekeeper.stop()
        await self.supervisor.drain()
        await self.client.aclose()


def build_services(
    config: Settings = settings,
    *,
    repository: Optional[BankLinkRepository] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[SleepFn] = None,
    cache: Optional[TTLCache] = None,
) -> ServiceContainer:
    """Wire the engine from settings. Missing credentials fail here, at startup."""
    if repository is None:
        sqlite_repository = SQLiteRepository(config.database_file)
        sqlite_repository.init_db()
        repository = sqlite_repository

    client = AggregatorClient(
        config.aggregator_api_url,
        config.aggregator_client_id or "",
        config.aggregator_client_secret or "",
        auth_url=config.aggregator_auth_url,
        authorize_url=config.aggregator_authorize_url,
        partner_id=config.aggregator_partner_id,
        webhook_secret=config.webhook_secret,
        transport=transport,
        sleep=sleep,
        cache=cache if cache is not None else api_cache,
    )
    cipher = TokenCipher(config.token_encryption_key)
    verifier = JWTVerifier(config.auth_jwt_secret, audience=config.auth_jwt_audience)
    tokens = TokenManager(repository, client, cipher, redirect_uri=config.oauth_redirect_uri)
    engine = SyncEngine(
        repository,
        client,
        tokens,
        max_concurrency=config.sync_max_concurrency,
        timeout_seconds=config.sync_timeout_seconds,
    )
    supervisor = SyncSupervisor(engine, repository)
    consents = ConsentService(
        repository,
        client,
        tokens,
        supervisor,
        redirect_uri=config.oauth_redirect_uri,
        institution_code=config.institution_code,
        institution_name=config.institution_name,
        institution_logo_url=config.institution_logo_url,
    )
    housekeeper = Housekeeper(
        consents,
        engine,
        sweep_interval=config.expiry_sweep_seconds,
        sync_interval=config.incremental_sync_seconds,
    )
    logger.info("Bank-link services wired against %s", config.aggregator_api_url)
    return ServiceContainer(
        settings=config,
        repository=repository,
        client=client,
        cipher=cipher,
        verifier=verifier,
        tokens=tokens,
        sync=engine,
        supervisor=supervisor,
        consents=consents,
        accounts=AccountService(repository),
        webhooks=WebhookIngestor(repository, client),
        housekeeper=housekeeper,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
