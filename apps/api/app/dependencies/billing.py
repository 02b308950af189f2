from __future__ import annotations

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.api.app.core.config import Settings, get_settings
from apps.api.app.db.session import get_session_factory
from apps.api.app.dependencies.auth import get_current_user
from apps.api.app.services.billing.ledger import LedgerService
from apps.api.app.services.billing.payment_methods import PaymentMethodService
from apps.api.app.services.billing.purchases import CreditPurchaseGateway
from apps.api.app.services.billing.reconciliation import SubscriptionReconciler
from apps.api.app.services.billing.stripe_client import StripeGateway


def get_ledger_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> LedgerService:
    return LedgerService(session_factory)


def get_purchase_gateway(
    ledger: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_settings),
) -> CreditPurchaseGateway:
    return CreditPurchaseGateway(ledger, credits_per_usd=settings.credits_per_usd)


def get_optional_stripe_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway | None:
    if not settings.stripe_secret_key:
        return None
    return StripeGateway(
        api_key=settings.stripe_secret_key,
        timeout_seconds=settings.stripe_api_timeout_seconds,
    )


def get_stripe_gateway(gateway: StripeGateway | None = Depends(get_optional_stripe_gateway)) -> StripeGateway:
    if gateway is None:
        raise HTTPException(status_code=503, detail="payment not configured")
    return gateway


def get_payment_method_service(gateway: StripeGateway = Depends(get_stripe_gateway)) -> PaymentMethodService:
    return PaymentMethodService(gateway)


def get_subscription_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    purchases: CreditPurchaseGateway = Depends(get_purchase_gateway),
    gateway: StripeGateway | None = Depends(get_optional_stripe_gateway),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(session_factory, purchases, gateway)


def require_admin(
    current_user: dict[str, str] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> dict[str, str]:
    if current_user["user_id"] not in settings.admin_user_ids:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return current_user
