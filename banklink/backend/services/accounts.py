from __future__ import annotations

import logging
from typing import Any, Dict, List

from banklink.core.data_models import AccountStatus, ConnectedAccount
from banklink.core.database import BankLinkRepository
from banklink.core.errors import AccountNotFound

from .audit import AuditAction, record_audit

logger = logging.getLogger("banklink.backend.accounts")

RECENT_TRANSACTIONS_LIMIT = 20


def _account_payload(account: ConnectedAccount) -> Dict[str, Any]:
    return {
        "id": account.id,
        "consent_id": account.consent_id,
        "remote_account_id": account.remote_account_id,
        "account_name": account.account_name,
        "account_type": account.account_type,
        "institution_name": account.institution_name,
        "masked_number": account.masked_number,
        "currency": account.currency,
        "balance": account.balance,
        "available_balance": account.available_balance,
        "status": account.status.value,
        "last_sync_at": account.last_sync_at,
    }


class AccountService:
    """Read and disconnect operations on a user's connected accounts."""

    def __init__(self, repository: BankLinkRepository):
        self._repository = repository

    def _owned(self, user_id: str, account_id: str) -> ConnectedAccount:
        account = self._repository.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def list_accounts(self, user_id: str) -> List[Dict[str, Any]]:
        return [_account_payload(account) for account in self._repository.list_accounts(user_id)]

    def get_account(self, user_id: str, account_id: str) -> Dict[str, Any]:
        account = self._owned(user_id, account_id)
        payload = _account_payload(account)
        payload["recent_transactions"] = [
            {
                "id": tx.id,
                "remote_transaction_id": tx.remote_transaction_id,
                "description": tx.description,
                "amount": tx.amount,
                "currency": tx.currency,
                "transaction_type": tx.transaction_type,
                "category": tx.category,
                "merchant_name": tx.merchant_name,
                "posted_at": tx.posted_at,
            }
            for tx in self._repository.list_transactions(account.id, limit=RECENT_TRANSACTIONS_LIMIT)
        ]
        return payload

    def disconnect_account(self, user_id: str, account_id: str) -> Dict[str, Any]:
        account = self._owned(user_id, account_id)
        self._repository.set_account_status(account.id, AccountStatus.INACTIVE)
        record_audit(
            self._repository,
            AuditAction.ACCOUNT_DISCONNECTED,
            user_id,
            {"accountId": account.id, "accountName": account.account_name},
            ip_address=None,
        )
        logger.info("Disconnected account %s for user %s", account.id, user_id)
        return {"account_id": account.id, "status": AccountStatus.INACTIVE.value}

    def sync_status(self, user_id: str) -> Dict[str, Any]:
        accounts = self._repository.list_accounts(user_id, status=AccountStatus.ACTIVE)
        return {
            "sync_status": [
                {
                    "account_id": account.id,
                    "account_name": account.account_name,
                    "last_sync_at": account.last_sync_at,
                    "balance": account.balance,
                    "is_synced": account.last_sync_at is not None,
                }
                for account in accounts
            ],
            "total_accounts": len(accounts),
            "synced_accounts": sum(1 for account in accounts if account.last_sync_at is not None),
        }

    def balance_summary(self, user_id: str) -> Dict[str, Any]:
        accounts = self._repository.list_accounts(user_id, status=AccountStatus.ACTIVE)
        by_currency: Dict[str, float] = {}
        for account in accounts:
            by_currency[account.currency] = by_currency.get(account.currency, 0.0) + (account.balance or 0.0)
        return {
            "balance_by_currency": {currency: round(total, 2) for currency, total in by_currency.items()},
            "account_count": len(accounts),
        }
