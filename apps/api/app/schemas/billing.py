from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subscription_status: str
    stripe_subscription_id: str | None
    stripe_price_id: str | None
    period_end: datetime | None
    has_access: bool


class SubscriptionCheckoutCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    price_id: str = Field(min_length=1, max_length=64)


class CheckoutSessionRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    url: str | None


class PortalSessionRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str


class PaymentMethodCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_method_id: str = Field(min_length=1, max_length=64)


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_method_id: str
    card_brand: str | None
    card_last4: str | None
    card_exp_month: int | None
    card_exp_year: int | None
    is_default: bool


class PaymentMethodListRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_methods: list[PaymentMethodRead]
