"""Core package exposing primary interfaces for the bank-link engine."""

from .aggregator_client import AggregatorClient, SandboxHealth
from .crypto import TokenCipher
from .database import BankLinkRepository, SQLiteRepository
from .data_models import AccountStatus, ConsentStatus

__all__ = [
    "AggregatorClient",
    "SandboxHealth",
    "TokenCipher",
    "BankLinkRepository",
    "SQLiteRepository",
    "AccountStatus",
    "ConsentStatus",
]
