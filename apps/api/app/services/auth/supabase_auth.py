from __future__ import annotations

from functools import lru_cache
from typing import Any

from supabase import AuthApiError, Client, create_client

from apps.api.app.core.config import get_settings


@lru_cache(maxsize=1)
def _service_client() -> Client:
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def verify_supabase_bearer_token(token: str) -> dict[str, Any]:
    try:
        result = _service_client().auth.get_user(token)
    except AuthApiError as exc:
        raise ValueError("Invalid or expired token.") from exc
    user = getattr(result, "user", None) if result is not None else None
    if user is None:
        raise ValueError("Invalid or expired token.")
    return {
        "id": str(user.id),
        "email": user.email,
    }
