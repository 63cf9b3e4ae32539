from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _csv(value: Optional[str], default: List[str]) -> List[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Runtime settings shared across the backend application."""

    def __init__(self) -> None:
        self.title: str = os.getenv("APP_TITLE", "BankLink Sync API")
        self.version: str = "1.0.0"
        self.frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:5173")
        self.cors_origins: List[str] = _csv(
            os.getenv("CORS_ORIGINS"),
            ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.database_file: str = os.getenv("DATABASE_FILE", "banklink.db")

        self.aggregator_api_url: str = os.getenv("AGGREGATOR_API_URL", "https://api.openbanking.mastercard.com.au")
        self.aggregator_auth_url: Optional[str] = os.getenv("AGGREGATOR_AUTH_URL")
        self.aggregator_authorize_url: Optional[str] = os.getenv("AGGREGATOR_AUTHORIZE_URL")
        self.aggregator_client_id: Optional[str] = os.getenv("AGGREGATOR_CLIENT_ID")
        self.aggregator_client_secret: Optional[str] = os.getenv("AGGREGATOR_CLIENT_SECRET")
        self.aggregator_partner_id: Optional[str] = os.getenv("AGGREGATOR_PARTNER_ID")
        self.oauth_redirect_uri: str = os.getenv(
            "OAUTH_REDIRECT_URI", "http://localhost:8000/api/consents/callback"
        )
        self.webhook_secret: Optional[str] = os.getenv("WEBHOOK_SECRET")
        self.token_encryption_key: Optional[str] = os.getenv("TOKEN_ENCRYPTION_KEY")

        self.auth_jwt_secret: Optional[str] = os.getenv("AUTH_JWT_SECRET")
        self.auth_jwt_audience: Optional[str] = os.getenv("AUTH_JWT_AUDIENCE")

        self.institution_code: str = os.getenv("INSTITUTION_CODE", "AUS-CDR-Mastercard")
        self.institution_name: str = os.getenv("INSTITUTION_NAME", "Mastercard Open Banking")
        self.institution_logo_url: Optional[str] = os.getenv("INSTITUTION_LOGO_URL")

        self.sync_max_concurrency: int = int(os.getenv("SYNC_MAX_CONCURRENCY", "4"))
        self.sync_timeout_seconds: float = float(os.getenv("SYNC_TIMEOUT_SECONDS", "120"))
        self.expiry_sweep_seconds: int = int(os.getenv("EXPIRY_SWEEP_SECONDS", "3600"))
        self.incremental_sync_seconds: int = int(os.getenv("INCREMENTAL_SYNC_SECONDS", "21600"))

        self.api_cache_ttl: int = int(os.getenv("API_CACHE_TTL", "300"))
        self.api_cache_size: int = int(os.getenv("API_CACHE_SIZE", "100"))


settings = Settings()
