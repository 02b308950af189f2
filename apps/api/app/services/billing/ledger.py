from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.api.app.db.models import CreditTransaction, CreditWallet
from apps.api.app.services.billing.errors import (
    DuplicatePayment,
    InsufficientCredits,
    InvalidAmount,
    PersistenceError,
)

_LOGGER = logging.getLogger(__name__)

CREDIT_TRANSACTION_TYPES = frozenset({"purchase", "refund", "adjustment"})

# Balance and history only change together: every mutation below is one
# conditional UPDATE on credit_wallets plus one INSERT into
# credit_transactions inside a single store transaction. Never read the
# balance into memory and write it back.


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: str
    new_balance: Decimal


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _positive_amount(value: object, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmount(f"{field_name} must be a number.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmount(f"{field_name} must be a number.") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"{field_name} must be greater than zero.")
    return amount


def _is_payment_reference_conflict(exc: IntegrityError) -> bool:
    return "payment_reference" in str(exc.orig)


class LedgerService:
    """Sole mutator of wallet balances.

    The store is injected as a session factory; each public operation runs in
    its own session so atomicity never depends on the caller's transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ensure_wallet(self, user_id: str) -> CreditWallet:
        try:
            async with self._session_factory() as db:
                wallet = await db.scalar(select(CreditWallet).where(CreditWallet.user_id == user_id))
                if wallet is not None:
                    return wallet

                now = _utcnow()
                wallet = CreditWallet(
                    id=str(uuid4()),
                    user_id=user_id,
                    balance=Decimal("0"),
                    last_sequence=1,
                    created_at=now,
                    updated_at=now,
                )
                db.add(wallet)
                db.add(
                    CreditTransaction(
                        id=str(uuid4()),
                        wallet_id=wallet.id,
                        user_id=user_id,
                        sequence=1,
                        amount=Decimal("0"),
                        transaction_type="purchase",
                        description="Initial wallet creation",
                        created_at=now,
                    )
                )
                try:
                    await db.commit()
                except IntegrityError:
                    # Lost the creation race; the unique user_id constraint kept the other row.
                    await db.rollback()
                    existing = await db.scalar(select(CreditWallet).where(CreditWallet.user_id == user_id))
                    if existing is None:
                        raise PersistenceError(f"Wallet creation for user {user_id} could not be resolved.")
                    _LOGGER.info("Concurrent wallet creation collapsed for user %s", user_id)
                    return existing
                _LOGGER.info("Created wallet %s for user %s", wallet.id, user_id)
                return wallet
        except SQLAlchemyError as exc:
            _LOGGER.error("Wallet lookup failed for user %s: %s", user_id, exc)
            raise PersistenceError(f"Wallet store unavailable for user {user_id}.") from exc

    async def get_wallet(self, user_id: str) -> CreditWallet:
        return await self.ensure_wallet(user_id)

    async def credit(
        self,
        user_id: str,
        amount: object,
        transaction_type: str = "purchase",
        description: str | None = None,
        *,
        payment_reference: str | None = None,
    ) -> LedgerEntry:
        credit_amount = _positive_amount(amount, "amount")
        if transaction_type not in CREDIT_TRANSACTION_TYPES:
            raise InvalidAmount(f"transaction_type must be one of {sorted(CREDIT_TRANSACTION_TYPES)}.")

        await self.ensure_wallet(user_id)
        transaction_id = str(uuid4())
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    now = _utcnow()
                    row = (
                        await db.execute(
                            update(CreditWallet)
                            .where(CreditWallet.user_id == user_id)
                            .values(
                                balance=CreditWallet.balance + credit_amount,
                                last_sequence=CreditWallet.last_sequence + 1,
                                updated_at=now,
                            )
                            .returning(CreditWallet.id, CreditWallet.balance, CreditWallet.last_sequence)
                            .execution_options(synchronize_session=False)
                        )
                    ).first()
                    if row is None:
                        raise PersistenceError(f"Wallet for user {user_id} disappeared during credit.")
                    db.add(
                        CreditTransaction(
                            id=transaction_id,
                            wallet_id=row.id,
                            user_id=user_id,
                            sequence=row.last_sequence,
                            amount=credit_amount,
                            transaction_type=transaction_type,
                            description=description,
                            payment_reference=payment_reference,
                            created_at=now,
                        )
                    )
        except IntegrityError as exc:
            if payment_reference is not None and _is_payment_reference_conflict(exc):
                raise DuplicatePayment(payment_reference) from exc
            _LOGGER.error("Credit rejected by store for user %s: %s", user_id, exc)
            raise PersistenceError(f"Credit for user {user_id} was not applied.") from exc
        except SQLAlchemyError as exc:
            _LOGGER.error("Credit failed for user %s: %s", user_id, exc)
            raise PersistenceError(f"Credit for user {user_id} was not applied.") from exc

        _LOGGER.info(
            "Credited %s minutes (%s) to user %s, transaction %s",
            credit_amount,
            transaction_type,
            user_id,
            transaction_id,
        )
        return LedgerEntry(transaction_id=transaction_id, new_balance=Decimal(str(row.balance)))

    async def debit(
        self,
        user_id: str,
        minutes: object,
        agent_reference: str | None = None,
        description: str | None = None,
    ) -> LedgerEntry:
        debit_amount = _positive_amount(minutes, "minutes")

        await self.ensure_wallet(user_id)
        transaction_id = str(uuid4())
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    now = _utcnow()
                    # Check and decrement in one statement so concurrent debits cannot both pass the check.
                    row = (
                        await db.execute(
                            update(CreditWallet)
                            .where(
                                CreditWallet.user_id == user_id,
                                CreditWallet.balance >= debit_amount,
                            )
                            .values(
                                balance=CreditWallet.balance - debit_amount,
                                last_sequence=CreditWallet.last_sequence + 1,
                                updated_at=now,
                            )
                            .returning(CreditWallet.id, CreditWallet.balance, CreditWallet.last_sequence)
                            .execution_options(synchronize_session=False)
                        )
                    ).first()
                    if row is None:
                        raise InsufficientCredits(user_id, debit_amount)
                    db.add(
                        CreditTransaction(
                            id=transaction_id,
                            wallet_id=row.id,
                            user_id=user_id,
                            sequence=row.last_sequence,
                            amount=-debit_amount,
                            transaction_type="usage",
                            description=description,
                            agent_reference=agent_reference,
                            created_at=now,
                        )
                    )
        except InsufficientCredits:
            _LOGGER.warning("Debit of %s minutes blocked for user %s: insufficient credits", debit_amount, user_id)
            raise
        except SQLAlchemyError as exc:
            _LOGGER.error("Debit failed for user %s: %s", user_id, exc)
            raise PersistenceError(f"Debit for user {user_id} was not applied.") from exc

        _LOGGER.info(
            "Debited %s minutes from user %s for agent %s, transaction %s",
            debit_amount,
            user_id,
            agent_reference,
            transaction_id,
        )
        return LedgerEntry(transaction_id=transaction_id, new_balance=Decimal(str(row.balance)))

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CreditTransaction], int]:
        try:
            async with self._session_factory() as db:
                total = int(
                    await db.scalar(
                        select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)
                    )
                    or 0
                )
                rows = await db.scalars(
                    select(CreditTransaction)
                    .where(CreditTransaction.user_id == user_id)
                    .order_by(CreditTransaction.sequence.desc())
                    .limit(limit)
                    .offset(offset)
                )
                return list(rows.all()), total
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Transaction history unavailable for user {user_id}.") from exc

    async def find_transaction_by_payment_reference(self, payment_reference: str) -> CreditTransaction | None:
        try:
            async with self._session_factory() as db:
                return await db.scalar(
                    select(CreditTransaction).where(CreditTransaction.payment_reference == payment_reference)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not check payment {payment_reference}.") from exc
