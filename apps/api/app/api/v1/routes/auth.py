from __future__ import annotations

from fastapi import APIRouter, Depends

from apps.api.app.core.config import Settings, get_settings
from apps.api.app.dependencies.auth import get_current_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
def auth_me(
    current_user: dict[str, str] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> dict[str, str | bool]:
    return {**current_user, "is_admin": current_user["user_id"] in settings.admin_user_ids}
