from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Ledger amounts are minutes of call credit. Numeric(18,8) keeps fractional
# minutes exact; never store them as floats.
LEDGER_AMOUNT = Numeric(18, 8)

TRANSACTION_TYPES = ("purchase", "usage", "refund", "adjustment")
SUBSCRIPTION_STATUSES = ("none", "trialing", "active", "past_due", "canceled")


class Base(DeclarativeBase):
    pass


class Profile(Base):
    """Per-user profile; also carries the Stripe subscription state."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subscription_status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default=text("'none'"), default="none"
    )
    subscription_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    payment_methods: Mapped[list["PaymentMethod"]] = relationship(back_populates="profile")


class CreditWallet(Base):
    __tablename__ = "credit_wallets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(
        LEDGER_AMOUNT, nullable=False, server_default=text("0"), default=Decimal("0")
    )
    # Bumped by every ledger mutation; the new value becomes the transaction's sequence.
    last_sequence: Mapped[int] = mapped_column(Integer(), nullable=False, server_default=text("0"), default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    transactions: Mapped[list["CreditTransaction"]] = relationship(back_populates="wallet")


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('purchase', 'usage', 'refund', 'adjustment')",
            name="ck_credit_transactions_type",
        ),
        UniqueConstraint("payment_reference", name="uq_credit_transactions_payment_reference"),
        UniqueConstraint("wallet_id", "sequence", name="uq_credit_transactions_wallet_sequence"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("credit_wallets.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(LEDGER_AMOUNT, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    agent_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    wallet: Mapped["CreditWallet"] = relationship(back_populates="transactions")


class PaymentMethod(Base):
    """Flattened cache of a card held by Stripe."""

    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_method_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    card_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_exp_month: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    card_exp_year: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean(), nullable=False, server_default=text("false"), default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    profile: Mapped["Profile"] = relationship(back_populates="payment_methods")
