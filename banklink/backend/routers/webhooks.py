from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from ..auth import AuthenticatedUser, get_current_user
from ..schemas import WebhookAck, WebhookEventOut
from ..state import ServiceContainer, get_services

router = APIRouter(prefix="/api", tags=["webhooks"])


@router.post("/webhooks/aggregator", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
):
    # Signature is computed over the exact bytes received.
    raw_body = await request.body()
    event = await services.webhooks.ingest(raw_body, x_signature)
    return WebhookAck(event_id=event.id)


@router.get("/webhooks/events", response_model=List[WebhookEventOut])
async def list_webhook_events(
    limit: int = Query(default=50, ge=1, le=500),
    processed: Optional[bool] = None,
    _user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return [WebhookEventOut(**event.model_dump()) for event in services.webhooks.list_events(limit, processed)]


@router.patch("/webhooks/events/{event_id}/processed")
async def mark_webhook_processed(
    event_id: str,
    _user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    if not services.webhooks.mark_processed(event_id):
        raise HTTPException(status_code=404, detail="Webhook event not found")
    return {"event_id": event_id, "processed": True}


@router.post("/webhooks/events/{event_id}/replay", response_model=WebhookEventOut)
async def replay_webhook_event(
    event_id: str,
    _user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    event = await services.webhooks.replay(event_id)
    return WebhookEventOut(**event.model_dump())
