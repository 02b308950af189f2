from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

MAX_CREDIT_MINUTES = 10_000.0

AgentReference = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]


class DebitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minutes: float = Field(gt=0, strict=True, allow_inf_nan=False)
    agent_reference: AgentReference
    description: str | None = Field(default=None, max_length=256)


class CreditRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: float = Field(gt=0, le=MAX_CREDIT_MINUTES, strict=True, allow_inf_nan=False)
    type: Literal["purchase", "refund", "adjustment"] = "purchase"
    description: str | None = Field(default=None, max_length=256)


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: str
    new_balance: str


class WalletRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    credits_balance: str
    created_at: datetime
    updated_at: datetime


class TransactionRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    amount: str
    transaction_type: str
    description: str | None
    agent_reference: str | None
    payment_reference: str | None
    created_at: datetime


class WalletOverviewRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wallet: WalletRead
    transactions: list[TransactionRead]


class TransactionListRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transactions: list[TransactionRead]
    total: int


class CreditCheckoutCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_usd: float = Field(gt=0, strict=True, allow_inf_nan=False)


class CreditCheckoutRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    url: str | None
    amount_usd: float
    minutes: str


class PurchaseConfirmCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_intent_id: str = Field(min_length=1, max_length=128)


class PurchaseConfirmRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: str | None
    minutes: str
    already_processed: bool


class AdminCreditRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: float = Field(gt=0, le=MAX_CREDIT_MINUTES, strict=True, allow_inf_nan=False)
    type: Literal["purchase", "refund", "adjustment"] = "adjustment"
    note: str | None = Field(default=None, max_length=256)


class AdminWalletRead(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wallet: WalletRead
    transactions: list[TransactionRead]
    total_transactions: int
