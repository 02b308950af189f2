from __future__ import annotations

import asyncio
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from apps.api.app.db.models import Base, CreditTransaction, CreditWallet
from apps.api.app.services.billing.errors import InvalidAmount
from apps.api.app.services.billing.ledger import LedgerService
from apps.api.app.services.billing.purchases import CreditPurchaseGateway


class CreditPurchaseGatewayTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.session_factory = async_sessionmaker(
            bind=cls.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        async def init_db() -> None:
            async with cls.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        asyncio.run(init_db())

    @classmethod
    def tearDownClass(cls) -> None:
        async def shutdown_db() -> None:
            async with cls.engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
            await cls.engine.dispose()

        asyncio.run(shutdown_db())

    def setUp(self) -> None:
        self.ledger = LedgerService(self.session_factory)
        self.gateway = CreditPurchaseGateway(self.ledger, credits_per_usd=Decimal("1"))
        self.user_id = f"buyer-{uuid4()}"

    def _balance(self) -> Decimal:
        async def run() -> Decimal:
            async with self.session_factory() as session:
                balance = await session.scalar(
                    select(CreditWallet.balance).where(CreditWallet.user_id == self.user_id)
                )
                return Decimal(str(balance))

        return asyncio.run(run())

    def test_one_dollar_buys_one_minute(self) -> None:
        self.assertEqual(self.gateway.minutes_for_amount(25), Decimal("25.00"))
        self.assertEqual(self.gateway.minutes_for_amount("9.99"), Decimal("9.99"))

    def test_conversion_rate_is_configurable(self) -> None:
        gateway = CreditPurchaseGateway(self.ledger, credits_per_usd=Decimal("2.5"))
        self.assertEqual(gateway.minutes_for_amount(5), Decimal("12.50"))
        self.assertEqual(gateway.minutes_for_amount("0.333"), Decimal("0.83"))

    def test_invalid_amounts_are_rejected(self) -> None:
        for bad in (0, -1, "abc", "inf"):
            with self.subTest(amount=bad):
                with self.assertRaises(InvalidAmount):
                    self.gateway.minutes_for_amount(bad)

    def test_confirmed_payment_credits_once(self) -> None:
        reference = f"pi_{uuid4().hex}"

        async def run():
            first = await self.gateway.apply_confirmed_payment(
                user_id=self.user_id,
                amount_usd=25,
                confirmation_reference=reference,
            )
            second = await self.gateway.apply_confirmed_payment(
                user_id=self.user_id,
                amount_usd=25,
                confirmation_reference=reference,
            )
            return first, second

        first, second = asyncio.run(run())
        self.assertFalse(first.already_processed)
        self.assertEqual(first.minutes, Decimal("25.00"))
        self.assertTrue(second.already_processed)
        self.assertEqual(second.transaction_id, first.transaction_id)
        self.assertEqual(self._balance(), Decimal("25"))

        async def purchase_rows() -> list[CreditTransaction]:
            async with self.session_factory() as session:
                rows = await session.scalars(
                    select(CreditTransaction).where(CreditTransaction.payment_reference == reference)
                )
                return list(rows.all())

        rows = asyncio.run(purchase_rows())
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].transaction_type, "purchase")
        self.assertEqual(rows[0].description, "Purchased 25.00 minutes")

    def test_concurrent_delivery_losing_the_insert_reports_already_processed(self) -> None:
        reference = f"pi_{uuid4().hex}"
        asyncio.run(
            self.gateway.apply_confirmed_payment(user_id=self.user_id, amount_usd=10, confirmation_reference=reference)
        )

        # Simulate the duplicate arriving between the existence check and the insert.
        with patch.object(self.ledger, "find_transaction_by_payment_reference", AsyncMock(return_value=None)):
            result = asyncio.run(
                self.gateway.apply_confirmed_payment(
                    user_id=self.user_id,
                    amount_usd=10,
                    confirmation_reference=reference,
                )
            )

        self.assertTrue(result.already_processed)
        self.assertIsNone(result.transaction_id)
        self.assertEqual(self._balance(), Decimal("10"))

    def test_missing_reference_is_rejected(self) -> None:
        with self.assertRaises(InvalidAmount):
            asyncio.run(
                self.gateway.apply_confirmed_payment(user_id=self.user_id, amount_usd=10, confirmation_reference="")
            )


if __name__ == "__main__":
    unittest.main()
