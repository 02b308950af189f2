from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.db.models import PaymentMethod, Profile
from apps.api.app.services.billing.customers import get_or_create_customer
from apps.api.app.services.billing.errors import PaymentProviderError
from apps.api.app.services.billing.stripe_client import StripeGateway

_LOGGER = logging.getLogger(__name__)


class PaymentMethodNotFound(LookupError):
    pass


class DefaultPaymentMethodLocked(Exception):
    pass


class PaymentMethodService:
    """Keeps the flattened payment_methods cache in step with Stripe.

    Stripe is always written first; the cache only records what Stripe accepted.
    """

    def __init__(self, gateway: StripeGateway) -> None:
        self._gateway = gateway

    async def list_methods(self, db: AsyncSession, user_id: str) -> list[PaymentMethod]:
        rows = await db.scalars(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        )
        return list(rows.all())

    async def _get_owned(self, db: AsyncSession, user_id: str, payment_method_id: str) -> PaymentMethod:
        method = await db.scalar(
            select(PaymentMethod).where(
                PaymentMethod.user_id == user_id,
                PaymentMethod.payment_method_id == payment_method_id,
            )
        )
        if method is None:
            raise PaymentMethodNotFound(payment_method_id)
        return method

    async def _mark_default(self, db: AsyncSession, user_id: str, payment_method_id: str) -> None:
        now = datetime.now(timezone.utc)
        await db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .values(is_default=PaymentMethod.payment_method_id == payment_method_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Profile)
            .where(Profile.id == user_id)
            .values(default_payment_method_id=payment_method_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def save_method(self, db: AsyncSession, profile: Profile, payment_method_id: str) -> PaymentMethod:
        customer_id = await get_or_create_customer(db, self._gateway, profile)
        await self._gateway.attach_payment_method(payment_method_id, customer_id)
        await self._gateway.set_default_payment_method(customer_id, payment_method_id)
        details = await self._gateway.retrieve_payment_method(payment_method_id)
        card = details.get("card") or {}

        method = await db.scalar(select(PaymentMethod).where(PaymentMethod.payment_method_id == payment_method_id))
        now = datetime.now(timezone.utc)
        if method is None:
            method = PaymentMethod(id=str(uuid4()), payment_method_id=payment_method_id, created_at=now)
            db.add(method)
        method.user_id = profile.id
        method.stripe_customer_id = customer_id
        method.card_brand = card.get("brand")
        method.card_last4 = card.get("last4")
        method.card_exp_month = card.get("exp_month")
        method.card_exp_year = card.get("exp_year")
        method.updated_at = now
        await db.flush()
        await self._mark_default(db, profile.id, payment_method_id)
        await db.commit()
        await db.refresh(method)
        _LOGGER.info("Saved payment method %s as default for user %s", payment_method_id, profile.id)
        return method

    async def set_default(self, db: AsyncSession, user_id: str, payment_method_id: str) -> PaymentMethod:
        method = await self._get_owned(db, user_id, payment_method_id)
        await self._gateway.set_default_payment_method(method.stripe_customer_id, payment_method_id)
        await self._mark_default(db, user_id, payment_method_id)
        await db.commit()
        await db.refresh(method)
        return method

    async def delete(self, db: AsyncSession, user_id: str, payment_method_id: str) -> None:
        method = await self._get_owned(db, user_id, payment_method_id)
        if method.is_default:
            raise DefaultPaymentMethodLocked(
                "Cannot delete the default payment method. Set another card as default first."
            )
        try:
            await self._gateway.detach_payment_method(payment_method_id)
        except PaymentProviderError as exc:
            # Already gone at Stripe; dropping the cache row is still correct.
            if exc.provider_code != "resource_missing":
                raise
            _LOGGER.info("Payment method %s already detached at Stripe", payment_method_id)
        await db.delete(method)
        await db.commit()
