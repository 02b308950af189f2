from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from apps.api.app.core.config import Settings, get_settings
from apps.api.app.dependencies.billing import get_subscription_reconciler
from apps.api.app.services.billing.errors import (
    InvalidAmount,
    LookupFailed,
    PaymentProviderError,
    PersistenceError,
    SignatureInvalid,
)
from apps.api.app.services.billing.reconciliation import SubscriptionReconciler
from apps.api.app.services.billing.stripe_client import construct_webhook_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
_LOGGER = logging.getLogger(__name__)


@router.post("/stripe", response_model=None)
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
) -> dict[str, Any] | JSONResponse:
    payload = await request.body()
    try:
        event = construct_webhook_event(
            payload=payload,
            sig_header=request.headers.get("Stripe-Signature", ""),
            secret=settings.stripe_webhook_secret,
        )
    except SignatureInvalid as exc:
        _LOGGER.warning("Rejected stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail="invalid stripe signature") from exc

    event_type = str(event.get("type") or "")
    try:
        await reconciler.handle_event(event)
    except InvalidAmount as exc:
        # Redelivery cannot fix a malformed payment; acknowledge so Stripe stops retrying.
        _LOGGER.error("Stripe event %s (%s) skipped: %s", event.get("id"), event_type, exc)
    except (LookupFailed, PersistenceError, PaymentProviderError) as exc:
        _LOGGER.error("Stripe event %s (%s) failed: %s", event.get("id"), event_type, exc)
        return JSONResponse(
            status_code=500,
            content={"received": False, "type": event_type, "error": exc.code},
        )
    return {"received": True, "type": event_type}
