from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.db.models import Profile
from apps.api.app.services.billing.errors import PaymentProviderError
from apps.api.app.services.billing.stripe_client import StripeGateway

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Found:
    profile_id: str
    via: str


@dataclass(frozen=True)
class NotFound:
    customer_id: str
    reason: str


CustomerResolution = Found | NotFound


async def ensure_profile(db: AsyncSession, *, user_id: str, email: str | None) -> Profile:
    profile = await db.get(Profile, user_id)
    if profile is not None:
        return profile
    # Phone and OTP sign-ups carry no email; NULL keeps them clear of the unique index.
    profile = Profile(id=user_id, email=email or None, subscription_status="none")
    db.add(profile)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise
    return profile


async def get_or_create_customer(db: AsyncSession, gateway: StripeGateway, profile: Profile) -> str:
    if profile.stripe_customer_id:
        return profile.stripe_customer_id
    customer = await gateway.create_customer(email=profile.email, user_id=profile.id)
    customer_id = str(customer["id"])
    profile.stripe_customer_id = customer_id
    profile.updated_at = datetime.now(timezone.utc)
    await db.commit()
    _LOGGER.info("Created Stripe customer %s for user %s", customer_id, profile.id)
    return customer_id


async def resolve_customer(
    db: AsyncSession,
    gateway: StripeGateway | None,
    customer_id: str,
) -> CustomerResolution:
    """Map a Stripe customer id to a profile.

    Step one is the cached ``profiles.stripe_customer_id`` mapping. Step two
    asks Stripe for the customer record and matches its
    ``metadata.supabase_user_id`` or email; a hit is cached for next time.
    """
    profile_id = await db.scalar(select(Profile.id).where(Profile.stripe_customer_id == customer_id))
    if profile_id is not None:
        return Found(profile_id=profile_id, via="cache")

    if gateway is None:
        return NotFound(customer_id=customer_id, reason="payment provider not configured")
    try:
        customer = await gateway.retrieve_customer(customer_id)
    except PaymentProviderError as exc:
        _LOGGER.warning("Customer %s lookup at Stripe failed: %s", customer_id, exc)
        return NotFound(customer_id=customer_id, reason="provider lookup failed")

    candidate: Profile | None = None
    via = "metadata"
    metadata_user_id = (customer.get("metadata") or {}).get("supabase_user_id")
    if metadata_user_id:
        candidate = await db.get(Profile, str(metadata_user_id))
    email = customer.get("email")
    if candidate is None and email:
        candidate = await db.scalar(select(Profile).where(func.lower(Profile.email) == str(email).lower()))
        via = "email"
    if candidate is None:
        return NotFound(customer_id=customer_id, reason="no profile matches the customer email")

    await db.execute(
        update(Profile)
        .where(Profile.id == candidate.id)
        .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    _LOGGER.info("Resolved Stripe customer %s to user %s via %s", customer_id, candidate.id, via)
    return Found(profile_id=candidate.id, via=via)
