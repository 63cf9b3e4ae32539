from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import AuthenticatedUser, get_current_user
from ..schemas import SyncResultResponse
from ..state import ServiceContainer, get_services

router = APIRouter(prefix="/api", tags=["accounts"])


@router.get("/accounts")
async def list_accounts(
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return {"accounts": services.accounts.list_accounts(user.user_id)}


@router.get("/accounts/sync-status")
async def sync_status(
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return services.accounts.sync_status(user.user_id)


@router.get("/accounts/balance-summary")
async def balance_summary(
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return services.accounts.balance_summary(user.user_id)


@router.post("/accounts/sync", response_model=SyncResultResponse)
async def sync_all_accounts(
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    result = await services.sync.run_with_timeout(services.sync.sync_user_accounts(user.user_id))
    return SyncResultResponse(**result.to_dict())


@router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return services.accounts.get_account(user.user_id, account_id)


@router.post("/accounts/{account_id}/sync", response_model=SyncResultResponse)
async def sync_account(
    account_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    result = await services.sync.run_with_timeout(services.sync.sync_account(user.user_id, account_id))
    return SyncResultResponse(**result.to_dict())


@router.delete("/accounts/{account_id}")
async def disconnect_account(
    account_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
):
    return services.accounts.disconnect_account(user.user_id, account_id)
