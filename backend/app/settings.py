from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    whatsapp_webhook_secret: str
    whatsapp_verify_token: str
    credential_encryption_key: str
    meta_api_base_url: str
    meta_api_version: str
    meta_request_timeout_seconds: int
    webhook_max_retries: int
    webhook_retry_base_seconds: int
    template_language_code: str
    outbound_unit_price: float
    outbound_currency: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def meta_api_url(self) -> str:
        return f"{self.meta_api_base_url.rstrip('/')}/{self.meta_api_version.strip('/')}"


def load_settings() -> Settings:
    persistence_db_path = os.getenv(
        "PERSISTENCE_DB_PATH", "data/whatsapp_gateway.sqlite3"
    ).strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", "").strip(),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip(),
        credential_encryption_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY", "").strip(),
        meta_api_base_url=os.getenv("META_API_BASE_URL", "https://graph.facebook.com").strip(),
        meta_api_version=os.getenv("META_API_VERSION", "v18.0").strip(),
        meta_request_timeout_seconds=max(1, min(30, _int_env("META_REQUEST_TIMEOUT_SECONDS", 15))),
        webhook_max_retries=max(1, _int_env("WEBHOOK_MAX_RETRIES", 3)),
        webhook_retry_base_seconds=max(1, _int_env("WEBHOOK_RETRY_BASE_SECONDS", 60)),
        template_language_code=os.getenv("TEMPLATE_LANGUAGE_CODE", "en_US").strip(),
        outbound_unit_price=max(0.0, _float_env("OUTBOUND_UNIT_PRICE", 0.004)),
        outbound_currency=os.getenv("OUTBOUND_CURRENCY", "USD").strip().upper(),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
    )
