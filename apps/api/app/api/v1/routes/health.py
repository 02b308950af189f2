from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.db.session import get_db

router = APIRouter(tags=["health"])
_LOGGER = logging.getLogger(__name__)


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/db", response_model=None)
async def health_db(db: AsyncSession = Depends(get_db)) -> dict[str, str] | JSONResponse:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        _LOGGER.error("Database health check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ok"}
