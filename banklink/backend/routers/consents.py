from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from ..auth import AuthenticatedUser, get_current_user
from ..schemas import ConsentRevokeResponse, ConsentStartRequest, ConsentStartResponse
from ..state import ServiceContainer, get_services

router = APIRouter(prefix="/api", tags=["consents"])


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/consents/start", response_model=ConsentStartResponse)
async def start_consent(
    req: ConsentStartRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    result = await services.consents.start_consent(
        user.user_id,
        req.duration_days,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ConsentStartResponse(
        consentId=result.consent_id,
        redirectUrl=result.redirect_url,
        state=result.state,
        nonce=result.nonce,
    )


@router.get("/consents/callback")
async def consent_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    services: ServiceContainer = Depends(get_services),
):
    """OAuth redirect target. Always answers with a redirect back to the frontend."""
    outcome = await services.consents.handle_callback(code, state, error, error_description)
    return RedirectResponse(url=outcome.frontend_redirect(services.settings.frontend_url), status_code=302)


@router.get("/consents")
async def list_consents(
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return {"consents": services.consents.list_consents(user.user_id)}


@router.get("/consents/sandbox-status")
async def sandbox_status(services: ServiceContainer = Depends(get_services)):
    return services.consents.sandbox_status()


@router.get("/consents/{consent_id}")
async def get_consent(
    consent_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    consent = services.consents.get_consent(consent_id, user.user_id)
    run = services.supervisor.status(consent_id)
    consent["initial_sync"] = run.to_dict() if run else None
    return consent


@router.get("/consents/{consent_id}/remote-status")
async def remote_consent_status(
    consent_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    """Check the consent at the aggregator and apply a remote revoke or expiry."""
    return await services.consents.reconcile_remote_status(consent_id, user.user_id)


@router.delete("/consents/{consent_id}", response_model=ConsentRevokeResponse)
async def revoke_consent(
    consent_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    consent = await services.consents.revoke(
        consent_id,
        user.user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ConsentRevokeResponse(consent_id=consent.id, status=consent.status.value)
