from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import stripe

from apps.api.app.services.billing.errors import PaymentProviderError, SignatureInvalid

_LOGGER = logging.getLogger(__name__)


def to_plain_dict(obj: Any) -> dict[str, Any]:
    """Normalize a StripeObject (or an already-plain mapping) into nested dicts."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return json.loads(str(obj))


def construct_webhook_event(*, payload: bytes, sig_header: str, secret: str | None) -> dict[str, Any]:
    if not secret:
        raise SignatureInvalid("Stripe webhook secret is not configured.")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header.")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise SignatureInvalid(str(exc)) from exc
    return to_plain_dict(event)


class StripeGateway:
    """Async facade over the stripe SDK with a bounded timeout on every call."""

    def __init__(self, *, api_key: str, timeout_seconds: float) -> None:
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    async def _invoke(self, resource: Any, method: str, *args: Any, **params: Any) -> dict[str, Any]:
        params["api_key"] = self._api_key
        call_async = getattr(resource, f"{method}_async", None)
        if callable(call_async):
            pending = call_async(*args, **params)
        else:
            pending = asyncio.to_thread(getattr(resource, method), *args, **params)
        label = f"{getattr(resource, '__name__', resource)}.{method}"
        try:
            result = await asyncio.wait_for(pending, timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            _LOGGER.error("Stripe call %s timed out after %ss; outcome unknown", label, self._timeout_seconds)
            raise PaymentProviderError(f"Stripe call {label} timed out.") from exc
        except stripe.StripeError as exc:
            _LOGGER.error("Stripe call %s failed: %s", label, exc)
            raise PaymentProviderError(
                f"Stripe call {label} failed: {exc.user_message or exc}",
                provider_code=getattr(exc, "code", None),
            ) from exc
        return to_plain_dict(result)

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.Customer, "retrieve", customer_id)

    async def create_customer(self, *, email: str | None, user_id: str) -> dict[str, Any]:
        params: dict[str, Any] = {"metadata": {"supabase_user_id": user_id}}
        if email:
            params["email"] = email
        return await self._invoke(stripe.Customer, "create", **params)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> dict[str, Any]:
        return await self._invoke(
            stripe.Customer,
            "modify",
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.PaymentMethod, "retrieve", payment_method_id)

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.PaymentMethod, "attach", payment_method_id, customer=customer_id)

    async def detach_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.PaymentMethod, "detach", payment_method_id)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.PaymentIntent, "retrieve", payment_intent_id)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._invoke(stripe.Subscription, "retrieve", subscription_id)

    async def create_credit_checkout_session(
        self,
        *,
        customer_id: str | None,
        user_id: str,
        amount_cents: int,
        minutes: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        metadata = {"user_id": user_id, "kind": "credits", "minutes": minutes}
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "unit_amount": amount_cents,
                        "product_data": {"name": f"{minutes} call minutes"},
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": user_id,
            "metadata": metadata,
            # Mirror metadata onto the PaymentIntent so payment_intent.succeeded can be credited too.
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        return await self._invoke(stripe.checkout.Session, "create", **params)

    async def create_subscription_checkout_session(
        self,
        *,
        customer_id: str,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        return await self._invoke(
            stripe.checkout.Session,
            "create",
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            subscription_data={"metadata": {"supabase_user_id": user_id}},
            allow_promotion_codes=True,
            client_reference_id=user_id,
            metadata={"supabase_user_id": user_id},
            success_url=success_url,
            cancel_url=cancel_url,
        )

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> dict[str, Any]:
        return await self._invoke(
            stripe.billing_portal.Session,
            "create",
            customer=customer_id,
            return_url=return_url,
        )
