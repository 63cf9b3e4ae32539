from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from banklink.core.aggregator_client import AggregatorClient
from banklink.core.data_models import AccountStatus, RemoteTransaction, WebhookEvent
from banklink.core.database import BankLinkRepository, utcnow
from banklink.core.errors import SignatureInvalid, WebhookProcessingError

from .audit import AuditAction, record_audit
from .sync_engine import store_remote_transaction

logger = logging.getLogger("banklink.backend.webhooks")


class WebhookEventType(str, Enum):
    BALANCE_UPDATED = "account.balance.updated"
    TRANSACTION_CREATED = "transaction.created"
    ACCOUNT_CONNECTED = "account.connected"
    ACCOUNT_DISCONNECTED = "account.disconnected"


Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class WebhookIngestor:
    """Validates, stores and applies aggregator push notifications."""

    def __init__(self, repository: BankLinkRepository, client: AggregatorClient):
        self._repository = repository
        self._client = client
        self._handlers: Dict[WebhookEventType, Handler] = {
            WebhookEventType.BALANCE_UPDATED: self._on_balance_updated,
            WebhookEventType.TRANSACTION_CREATED: self._on_transaction_created,
            WebhookEventType.ACCOUNT_CONNECTED: self._on_account_connected,
            WebhookEventType.ACCOUNT_DISCONNECTED: self._on_account_disconnected,
        }
        missing = set(WebhookEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for {sorted(item.value for item in missing)}")

    async def ingest(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        """Validate the signature, persist the raw event, then dispatch it.

        Nothing is written when the signature does not match.
        """
        if not self._client.validate_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise SignatureInvalid("Invalid webhook signature")

        text = raw_body.decode("utf-8", errors="replace")
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            body = None
        event_type = str(body.get("eventType") or "unknown") if isinstance(body, dict) else "unknown"

        event = self._repository.add_webhook_event(event_type, text)
        if not isinstance(body, dict):
            logger.warning("Webhook %s is not a JSON object; stored for inspection", event.id)
            raise WebhookProcessingError("Webhook body is not a JSON object")

        await self._dispatch(event, body)
        return event

    async def _dispatch(self, event: WebhookEvent, body: Dict[str, Any]) -> None:
        try:
            event_type = WebhookEventType(event.event_type)
        except ValueError:
            logger.info("Unhandled webhook event type: %s", event.event_type)
            self._repository.mark_webhook_processed(event.id)
            return

        data = body.get("data") or {}
        try:
            await self._handlers[event_type](data)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Webhook %s (%s) failed; left unprocessed for replay", event.id, event.event_type)
            raise WebhookProcessingError(f"Failed to process {event.event_type}") from exc
        self._repository.mark_webhook_processed(event.id)

    async def replay(self, event_id: str) -> WebhookEvent:
        """Re-apply a stored event, e.g. after a handler failure."""
        event = self._repository.get_webhook_event(event_id)
        if event is None:
            raise WebhookProcessingError(f"Webhook event {event_id} not found", http_status=404)
        try:
            body = json.loads(event.payload)
        except json.JSONDecodeError as exc:
            raise WebhookProcessingError(f"Webhook event {event_id} is not valid JSON") from exc
        await self._dispatch(event, body)
        refreshed = self._repository.get_webhook_event(event_id)
        assert refreshed is not None
        return refreshed

    def list_events(self, limit: int = 50, processed: Optional[bool] = None) -> List[WebhookEvent]:
        return self._repository.list_webhook_events(limit=limit, processed=processed)

    def mark_processed(self, event_id: str) -> bool:
        return self._repository.mark_webhook_processed(event_id)

    async def _on_balance_updated(self, data: Dict[str, Any]) -> None:
        accounts = self._repository.find_accounts_by_remote_id(str(data["accountId"]))
        if not accounts:
            logger.warning("Balance update for unknown account %s", data["accountId"])
            return
        now = utcnow()
        for account in accounts:
            self._repository.update_account_balance(
                account.id,
                float(data["balance"]),
                currency=data.get("currency"),
                synced_at=now,
            )
        logger.info("Updated balance for account %s", data["accountId"])

    async def _on_transaction_created(self, data: Dict[str, Any]) -> None:
        remote_account_id = str(data["accountId"])
        try:
            transaction = RemoteTransaction.model_validate(data["transaction"])
        except ValidationError as exc:
            raise ValueError(f"Malformed transaction payload: {exc}") from exc

        accounts = self._repository.find_accounts_by_remote_id(remote_account_id)
        if not accounts:
            logger.warning("Transaction for unknown account %s", remote_account_id)
            return
        for account in accounts:
            if transaction.transactionId and self._repository.has_remote_transaction(
                account.id, transaction.transactionId
            ):
                logger.info("Transaction %s already stored for account %s", transaction.transactionId, account.id)
                continue
            store_remote_transaction(self._repository, account, transaction)
            logger.info("Created transaction %s via webhook", transaction.transactionId)

    async def _on_account_connected(self, data: Dict[str, Any]) -> None:
        remote_account_id = data.get("accountId")
        accounts = self._repository.find_accounts_by_remote_id(str(remote_account_id)) if remote_account_id else []
        user_id = accounts[0].user_id if accounts else data.get("userId")
        record_audit(self._repository, AuditAction.ACCOUNT_CONNECTED, user_id, {"accountId": remote_account_id})
        logger.info("Account connected: %s", remote_account_id)

    async def _on_account_disconnected(self, data: Dict[str, Any]) -> None:
        remote_account_id = str(data["accountId"])
        for account in self._repository.find_accounts_by_remote_id(remote_account_id):
            self._repository.set_account_status(account.id, AccountStatus.INACTIVE)
            record_audit(
                self._repository,
                AuditAction.ACCOUNT_DISCONNECTED,
                account.user_id,
                {"accountId": account.id, "remoteAccountId": remote_account_id},
            )
        logger.info("Account disconnected: %s", remote_account_id)
