from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_anon_key: str | None
    supabase_service_role_key: str
    api_cors_allowed_origins: list[str]
    admin_user_ids: frozenset[str]
    stripe_secret_key: str | None
    stripe_webhook_secret: str | None
    stripe_api_timeout_seconds: float
    credits_per_usd: Decimal
    top_up_min_usd: float
    top_up_max_usd: float
    app_base_url: str
    log_level: str


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a float.") from exc


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name) or default
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise RuntimeError(f"{name} must be a decimal number.") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero.")
    return value


def _csv_env(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    supabase_url = os.getenv("SUPABASE_URL")
    if not supabase_url:
        raise RuntimeError("SUPABASE_URL must be set.")
    supabase_service_role_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not supabase_service_role_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY must be set.")

    return Settings(
        supabase_url=supabase_url,
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY"),
        supabase_service_role_key=supabase_service_role_key,
        api_cors_allowed_origins=_csv_env("API_CORS_ALLOWED_ORIGINS"),
        admin_user_ids=frozenset(_csv_env("ADMIN_USER_IDS")),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        stripe_api_timeout_seconds=_float_env("STRIPE_API_TIMEOUT_SECONDS", 10.0),
        credits_per_usd=_decimal_env("CREDITS_PER_USD", "1"),
        top_up_min_usd=_float_env("TOP_UP_MIN_USD", 1.0),
        top_up_max_usd=_float_env("TOP_UP_MAX_USD", 500.0),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
