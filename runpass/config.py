from __future__ import annotations
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ----------------------------
# Settings (env / .env)
# ----------------------------
class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = "sqlite:///./runpass.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # defaults to the pool size (postgres) or 10 (sqlite)
    db_gate_limit: Optional[int] = None
    # how often a transaction is retried after a unique-key race
    db_tx_attempts: int = 5

    # 'creation': live orders hold stock | 'payment': only paid orders do
    reservation_policy: Literal["creation", "payment"] = "creation"

    # Identifiers
    order_number_prefix: str = "FR"
    order_number_suffix_length: int = 6
    identifier_max_attempts: int = 8
    bib_min: int = 1
    bib_max: int = 99_999
    bib_width: int = 5

    # Form schema (JSON list of field specs); None = no dynamic fields
    form_schema_path: Optional[str] = None
    # form field whose value may only back one live order
    identity_field: Optional[str] = "nik"

    # Payments
    payment_backend: Literal["mock", "midtrans"] = "mock"
    midtrans_server_key: str = ""
    midtrans_is_production: bool = False
    midtrans_timeout_seconds: float = 10.0
    gateway_requery_notifications: bool = False
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/api/payments/notification"

    # Admin
    admin_token: str = "dev-admin-token-change-me"

    # Observability
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"

    @field_validator("order_number_prefix")
    @classmethod
    def _strip_prefix(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("bib_max")
    @classmethod
    def _bib_range(cls, v: int, info) -> int:
        lo = info.data.get("bib_min", 1)
        if v < lo:
            raise ValueError("bib_max must be >= bib_min")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
