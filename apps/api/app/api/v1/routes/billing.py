from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.core.config import Settings, get_settings
from apps.api.app.db.models import PaymentMethod, Profile
from apps.api.app.db.session import get_db
from apps.api.app.dependencies.auth import get_current_user
from apps.api.app.dependencies.billing import (
    get_optional_stripe_gateway,
    get_payment_method_service,
    get_stripe_gateway,
    get_subscription_reconciler,
)
from apps.api.app.schemas.billing import (
    CheckoutSessionRead,
    PaymentMethodCreate,
    PaymentMethodListRead,
    PaymentMethodRead,
    PortalSessionRead,
    SubscriptionCheckoutCreate,
    SubscriptionRead,
)
from apps.api.app.services.billing.customers import ensure_profile, get_or_create_customer
from apps.api.app.services.billing.payment_methods import (
    DefaultPaymentMethodLocked,
    PaymentMethodNotFound,
    PaymentMethodService,
)
from apps.api.app.services.billing.reconciliation import SubscriptionReconciler
from apps.api.app.services.billing.stripe_client import StripeGateway

router = APIRouter(prefix="/billing", tags=["billing"])

_ACCESS_STATUSES = frozenset({"trialing", "active"})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _subscription_to_read(profile: Profile) -> SubscriptionRead:
    status = profile.subscription_status or "none"
    period_end = _as_utc(profile.subscription_period_end)
    has_access = status in _ACCESS_STATUSES or (
        status == "canceled" and period_end is not None and period_end > datetime.now(timezone.utc)
    )
    return SubscriptionRead(
        subscription_status=status,
        stripe_subscription_id=profile.stripe_subscription_id,
        stripe_price_id=profile.stripe_price_id,
        period_end=period_end,
        has_access=has_access,
    )


def _method_to_read(method: PaymentMethod) -> PaymentMethodRead:
    return PaymentMethodRead(
        payment_method_id=method.payment_method_id,
        card_brand=method.card_brand,
        card_last4=method.card_last4,
        card_exp_month=method.card_exp_month,
        card_exp_year=method.card_exp_year,
        is_default=bool(method.is_default),
    )


@router.get("/subscription", response_model=SubscriptionRead)
async def get_my_subscription(
    refresh: bool = Query(default=False),
    current_user: dict[str, str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway | None = Depends(get_optional_stripe_gateway),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
) -> SubscriptionRead:
    profile = await ensure_profile(db, user_id=current_user["user_id"], email=current_user["email"])
    if refresh and profile.stripe_subscription_id:
        if gateway is None:
            raise HTTPException(status_code=503, detail="payment not configured")
        subscription = await gateway.retrieve_subscription(profile.stripe_subscription_id)
        await reconciler.sync_subscription(profile.id, subscription)
        await db.refresh(profile)
    return _subscription_to_read(profile)


@router.post("/checkout-session", response_model=CheckoutSessionRead)
async def create_subscription_checkout(
    payload: SubscriptionCheckoutCreate,
    current_user: dict[str, str] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutSessionRead:
    profile = await ensure_profile(db, user_id=current_user["user_id"], email=current_user["email"])
    customer_id = await get_or_create_customer(db, gateway, profile)
    session = await gateway.create_subscription_checkout_session(
        customer_id=customer_id,
        user_id=profile.id,
        price_id=payload.price_id,
        success_url=f"{settings.app_base_url}/dashboard/billing?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.app_base_url}/dashboard/billing?checkout=canceled",
    )
    session_id = session.get("id")
    if not isinstance(session_id, str) or not session_id:
        raise HTTPException(status_code=502, detail="checkout session creation failed")
    return CheckoutSessionRead(session_id=session_id, url=session.get("url"))


@router.post("/portal-session", response_model=PortalSessionRead)
async def create_portal_session(
    current_user: dict[str, str] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> PortalSessionRead:
    profile = await ensure_profile(db, user_id=current_user["user_id"], email=current_user["email"])
    if not profile.stripe_customer_id:
        raise HTTPException(status_code=404, detail="No billing account found.")
    session = await gateway.create_portal_session(
        customer_id=profile.stripe_customer_id,
        return_url=f"{settings.app_base_url}/dashboard/billing",
    )
    url = session.get("url")
    if not isinstance(url, str) or not url:
        raise HTTPException(status_code=502, detail="portal session creation failed")
    return PortalSessionRead(url=url)


@router.get("/payment-methods", response_model=PaymentMethodListRead)
async def list_payment_methods(
    current_user: dict[str, str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodListRead:
    methods = await service.list_methods(db, current_user["user_id"])
    return PaymentMethodListRead(payment_methods=[_method_to_read(method) for method in methods])


@router.post("/payment-methods", response_model=PaymentMethodRead)
async def save_payment_method(
    payload: PaymentMethodCreate,
    current_user: dict[str, str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodRead:
    profile = await ensure_profile(db, user_id=current_user["user_id"], email=current_user["email"])
    method = await service.save_method(db, profile, payload.payment_method_id)
    return _method_to_read(method)


@router.post("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodRead)
async def set_default_payment_method(
    payment_method_id: str,
    current_user: dict[str, str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodRead:
    try:
        method = await service.set_default(db, current_user["user_id"], payment_method_id)
    except PaymentMethodNotFound as exc:
        raise HTTPException(status_code=404, detail="Payment method not found.") from exc
    return _method_to_read(method)


@router.delete("/payment-methods/{payment_method_id}")
async def delete_payment_method(
    payment_method_id: str,
    current_user: dict[str, str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> dict[str, bool]:
    try:
        await service.delete(db, current_user["user_id"], payment_method_id)
    except PaymentMethodNotFound as exc:
        raise HTTPException(status_code=404, detail="Payment method not found.") from exc
    except DefaultPaymentMethodLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"deleted": True}
