"""Stripe webhook reconciliation.

Subscription events only ever *set* profile fields to values taken from the
event, so a redelivered event leaves the profile exactly as one delivery
would. Credit purchases are additive and go through the purchase gateway,
which deduplicates on the payment reference.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.api.app.db.models import Profile
from apps.api.app.services.billing.customers import CustomerResolution, NotFound, resolve_customer
from apps.api.app.services.billing.errors import InvalidAmount, LookupFailed, PersistenceError
from apps.api.app.services.billing.purchases import CreditPurchaseGateway
from apps.api.app.services.billing.stripe_client import StripeGateway

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationOutcome:
    event_type: str
    handled: bool
    detail: str


def _epoch_to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_fields(subscription: dict[str, Any]) -> dict[str, Any]:
    """Profile columns carried by a Stripe subscription object."""
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    # Newer API versions moved current_period_end from the subscription onto its items.
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")
    fields = {
        "stripe_subscription_id": subscription.get("id"),
        "subscription_status": subscription.get("status"),
        "stripe_price_id": (first_item.get("price") or {}).get("id"),
        "subscription_period_end": _epoch_to_datetime(period_end),
    }
    return {key: value for key, value in fields.items() if value is not None}


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = details.get("subscription")
    return subscription_id if isinstance(subscription_id, str) else None


class SubscriptionReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        purchases: CreditPurchaseGateway,
        gateway: StripeGateway | None,
    ) -> None:
        self._session_factory = session_factory
        self._purchases = purchases
        self._gateway = gateway
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "checkout.session.completed": self._on_checkout_completed,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
        }

    async def handle_event(self, event: dict[str, Any]) -> ReconciliationOutcome:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            _LOGGER.info("Ignoring stripe event %s of type %s", event.get("id"), event_type)
            return ReconciliationOutcome(event_type=event_type, handled=False, detail="ignored")
        detail = await handler(obj)
        _LOGGER.info("Reconciled stripe event %s (%s): %s", event.get("id"), event_type, detail)
        return ReconciliationOutcome(event_type=event_type, handled=True, detail=detail)

    async def resolve_customer(self, customer_id: str) -> CustomerResolution:
        try:
            async with self._session_factory() as db:
                return await resolve_customer(db, self._gateway, customer_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Profile store unavailable while resolving {customer_id}.") from exc

    async def sync_subscription(self, profile_id: str, subscription: dict[str, Any]) -> dict[str, Any]:
        fields = subscription_fields(subscription)
        await self._update_profile(profile_id, fields)
        return fields

    async def _require_profile_for_customer(self, customer_id: Any) -> str:
        if not customer_id:
            raise LookupFailed("Event carries no customer reference.")
        resolution = await self.resolve_customer(str(customer_id))
        if isinstance(resolution, NotFound):
            _LOGGER.error("Stripe customer %s unresolved: %s", resolution.customer_id, resolution.reason)
            raise LookupFailed(f"Stripe customer {resolution.customer_id} unresolved: {resolution.reason}.")
        return resolution.profile_id

    async def _profile_exists(self, profile_id: str) -> bool:
        try:
            async with self._session_factory() as db:
                return await db.get(Profile, profile_id) is not None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Profile store unavailable for user {profile_id}.") from exc

    async def _update_profile(
        self,
        profile_id: str,
        fields: dict[str, Any],
        *,
        only_if_status_in: tuple[str, ...] | None = None,
    ) -> bool:
        if not fields:
            return False
        stmt = update(Profile).where(Profile.id == profile_id)
        if only_if_status_in is not None:
            stmt = stmt.where(
                or_(
                    Profile.subscription_status.in_(only_if_status_in),
                    Profile.subscription_status.is_(None),
                )
            )
        stmt = stmt.values(**fields, updated_at=datetime.now(timezone.utc)).execution_options(
            synchronize_session=False
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    result = await db.execute(stmt)
        except SQLAlchemyError as exc:
            _LOGGER.error("Subscription update failed for user %s: %s", profile_id, exc)
            raise PersistenceError(f"Subscription state for user {profile_id} was not saved.") from exc
        return result.rowcount > 0

    async def _on_subscription_changed(self, subscription: dict[str, Any]) -> str:
        profile_id = await self._require_profile_for_customer(subscription.get("customer"))
        fields = subscription_fields(subscription)
        await self._update_profile(profile_id, fields)
        return f"user {profile_id} subscription {fields.get('subscription_status')}"

    async def _on_subscription_deleted(self, subscription: dict[str, Any]) -> str:
        profile_id = await self._require_profile_for_customer(subscription.get("customer"))
        # period_end is kept so access continues until the paid period runs out.
        fields = subscription_fields(subscription)
        fields["subscription_status"] = "canceled"
        await self._update_profile(profile_id, fields)
        return f"user {profile_id} subscription canceled"

    async def _on_invoice_payment_failed(self, invoice: dict[str, Any]) -> str:
        profile_id = await self._require_profile_for_customer(invoice.get("customer"))
        fields: dict[str, Any] = {"subscription_status": "past_due"}
        subscription_id = _invoice_subscription_id(invoice)
        if subscription_id:
            fields["stripe_subscription_id"] = subscription_id
        await self._update_profile(profile_id, fields)
        return f"user {profile_id} subscription past_due"

    async def _on_checkout_completed(self, session: dict[str, Any]) -> str:
        mode = session.get("mode")
        if mode == "payment":
            return await self._apply_credit_purchase(
                session,
                amount_cents=session.get("amount_total"),
                reference=session.get("payment_intent") or session.get("id"),
                settled=session.get("payment_status") == "paid",
            )
        if mode != "subscription":
            return f"checkout mode {mode} ignored"

        metadata = session.get("metadata") or {}
        profile_id = metadata.get("supabase_user_id") or session.get("client_reference_id")
        if not profile_id or not await self._profile_exists(str(profile_id)):
            profile_id = await self._require_profile_for_customer(session.get("customer"))
        profile_id = str(profile_id)

        fields: dict[str, Any] = {}
        if session.get("customer"):
            fields["stripe_customer_id"] = session["customer"]
        if isinstance(session.get("subscription"), str):
            fields["stripe_subscription_id"] = session["subscription"]
        await self._update_profile(profile_id, fields)
        # Only promote from "none": a subscription event may already have set trialing or past_due.
        promoted = await self._update_profile(
            profile_id,
            {"subscription_status": "active"},
            only_if_status_in=("none",),
        )
        return f"user {profile_id} checkout completed{' (activated)' if promoted else ''}"

    async def _on_payment_intent_succeeded(self, payment_intent: dict[str, Any]) -> str:
        return await self._apply_credit_purchase(
            payment_intent,
            amount_cents=payment_intent.get("amount_received") or payment_intent.get("amount"),
            reference=payment_intent.get("id"),
            settled=True,
        )

    async def _apply_credit_purchase(
        self,
        payment: dict[str, Any],
        *,
        amount_cents: Any,
        reference: Any,
        settled: bool,
    ) -> str:
        metadata = payment.get("metadata") or {}
        if metadata.get("kind") != "credits":
            return "not a credit purchase"
        if not settled:
            return "payment not settled yet"
        user_id = metadata.get("user_id") or payment.get("client_reference_id")
        if not user_id:
            raise LookupFailed("Credit purchase carries no user reference.")
        if amount_cents is None or not reference:
            raise InvalidAmount("Credit purchase is missing its amount or payment reference.")

        result = await self._purchases.apply_confirmed_payment(
            user_id=str(user_id),
            amount_usd=Decimal(int(amount_cents)) / 100,
            confirmation_reference=str(reference),
        )
        if result.already_processed:
            return f"payment {reference} already credited"
        return f"credited {result.minutes} minutes to user {user_id}"
