from __future__ import annotations

import asyncio
import os
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Keep import-time settings self-contained for CI/local test runs.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "dummy-service-role-key")
os.environ.setdefault("API_CORS_ALLOWED_ORIGINS", "http://localhost:3000")

from apps.api.app.core.config import get_settings
from apps.api.app.db.models import Base, CreditTransaction, CreditWallet, PaymentMethod, Profile
from apps.api.app.db.session import get_session_factory
from apps.api.app.dependencies.auth import get_current_user
from apps.api.app.dependencies.billing import get_optional_stripe_gateway
from apps.api.app.main import app
from apps.api.app.services.billing.ledger import LedgerService


class WalletRoutesTests(unittest.TestCase):
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
        cls.user_id = "wallet-user"
        cls.user_email = "wallet-user@example.com"
        cls.admin_user_id = "wallet-admin"
        cls.admin_email = "wallet-admin@example.com"

        async def init_db() -> None:
            async with cls.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        asyncio.run(init_db())

        def override_session_factory() -> async_sessionmaker[AsyncSession]:
            return cls.session_factory

        def override_current_user() -> dict[str, str]:
            return {"user_id": cls.current_user_id, "email": cls.current_user_email}

        def override_stripe_gateway():
            return cls.stripe_gateway

        cls._prev_admin_ids = os.environ.get("ADMIN_USER_IDS")
        os.environ["ADMIN_USER_IDS"] = cls.admin_user_id
        get_settings.cache_clear()

        app.dependency_overrides[get_session_factory] = override_session_factory
        app.dependency_overrides[get_current_user] = override_current_user
        app.dependency_overrides[get_optional_stripe_gateway] = override_stripe_gateway
        cls.client = TestClient(app)

    @classmethod
    def tearDownClass(cls) -> None:
        app.dependency_overrides.clear()
        if cls._prev_admin_ids is None:
            os.environ.pop("ADMIN_USER_IDS", None)
        else:
            os.environ["ADMIN_USER_IDS"] = cls._prev_admin_ids
        get_settings.cache_clear()

        async def shutdown_db() -> None:
            async with cls.engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
            await cls.engine.dispose()

        asyncio.run(shutdown_db())

    def setUp(self) -> None:
        self.__class__.current_user_id = self.__class__.user_id
        self.__class__.current_user_email = self.__class__.user_email
        self.__class__.stripe_gateway = None
        get_settings.cache_clear()

        async def reset_rows() -> None:
            async with self.session_factory() as session:
                await session.execute(delete(CreditTransaction))
                await session.execute(delete(CreditWallet))
                await session.execute(delete(PaymentMethod))
                await session.execute(delete(Profile))
                await session.commit()

        asyncio.run(reset_rows())

    def _credit(self, user_id: str, amount: int) -> None:
        asyncio.run(LedgerService(self.session_factory).credit(user_id, amount))

    def _balance(self, user_id: str) -> Decimal:
        async def run() -> Decimal:
            async with self.session_factory() as session:
                balance = await session.scalar(select(CreditWallet.balance).where(CreditWallet.user_id == user_id))
                return Decimal(str(balance))

        return asyncio.run(run())

    def _fake_gateway(self) -> MagicMock:
        gateway = MagicMock()
        gateway.create_customer = AsyncMock(return_value={"id": "cus_wallet"})
        gateway.create_credit_checkout_session = AsyncMock(
            return_value={"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
        )
        gateway.retrieve_payment_intent = AsyncMock()
        self.__class__.stripe_gateway = gateway
        return gateway

    def test_get_wallet_creates_wallet_lazily(self) -> None:
        response = self.client.get("/api/v1/wallet")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["wallet"]["user_id"], self.user_id)
        self.assertEqual(body["wallet"]["credits_balance"], "0")
        self.assertEqual(len(body["transactions"]), 1)
        self.assertEqual(body["transactions"][0]["description"], "Initial wallet creation")

    def test_get_wallet_returns_at_most_ten_recent_transactions(self) -> None:
        self._credit(self.user_id, 100)
        ledger = LedgerService(self.session_factory)
        for index in range(12):
            asyncio.run(ledger.debit(self.user_id, 1, f"agent-{index}"))

        response = self.client.get("/api/v1/wallet")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["wallet"]["credits_balance"], "88")
        self.assertEqual(len(body["transactions"]), 10)

    def test_deduct_success(self) -> None:
        self._credit(self.user_id, 100)
        response = self.client.post(
            "/api/v1/wallet/deduct",
            json={"minutes": 30, "agent_reference": "agent-1", "description": "Support call"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["new_balance"], "70")
        self.assertTrue(body["transaction_id"])
        self.assertEqual(self._balance(self.user_id), Decimal("70"))

    def test_deduct_insufficient_credits_returns_402(self) -> None:
        self._credit(self.user_id, 5)
        response = self.client.post("/api/v1/wallet/deduct", json={"minutes": 10, "agent_reference": "agent-1"})
        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["error"], "insufficient_credits")
        self.assertEqual(self._balance(self.user_id), Decimal("5"))

    def test_deduct_invalid_input_returns_400(self) -> None:
        payloads = [
            {"minutes": 0, "agent_reference": "agent-1"},
            {"minutes": -3, "agent_reference": "agent-1"},
            {"minutes": "lots", "agent_reference": "agent-1"},
            {"minutes": 3},
            {"minutes": 3, "agent_reference": ""},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                response = self.client.post("/api/v1/wallet/deduct", json=payload)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "invalid_input")

    def test_deduct_rejects_coercible_minutes_without_billing(self) -> None:
        self._credit(self.user_id, 10)
        payloads = [
            {"minutes": True, "agent_reference": "A1"},
            {"minutes": "5", "agent_reference": "A1"},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                response = self.client.post("/api/v1/wallet/deduct", json=payload)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "invalid_input")
        self.assertEqual(self._balance(self.user_id), Decimal("10"))

    def test_deduct_rejects_blank_agent_reference(self) -> None:
        self._credit(self.user_id, 10)
        response = self.client.post("/api/v1/wallet/deduct", json={"minutes": 1, "agent_reference": "   "})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_input")
        self.assertEqual(self._balance(self.user_id), Decimal("10"))

    def test_deduct_strips_agent_reference(self) -> None:
        self._credit(self.user_id, 10)
        response = self.client.post("/api/v1/wallet/deduct", json={"minutes": 2.5, "agent_reference": "  agent-7 "})
        self.assertEqual(response.status_code, 200)

        async def stored_reference() -> str | None:
            async with self.session_factory() as session:
                return await session.scalar(
                    select(CreditTransaction.agent_reference).where(CreditTransaction.transaction_type == "usage")
                )

        self.assertEqual(asyncio.run(stored_reference()), "agent-7")

    def test_credit_endpoint_rejects_out_of_range_amounts(self) -> None:
        self.__class__.current_user_id = self.admin_user_id
        for amount in (1e10, 10_000.01, True, "50"):
            with self.subTest(amount=amount):
                response = self.client.post("/api/v1/wallet", json={"amount": amount})
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "invalid_input")

    def test_deduct_requires_bearer_token(self) -> None:
        override = app.dependency_overrides.pop(get_current_user)
        try:
            response = self.client.post("/api/v1/wallet/deduct", json={"minutes": 1, "agent_reference": "agent-1"})
        finally:
            app.dependency_overrides[get_current_user] = override
        self.assertEqual(response.status_code, 401)

    def test_credit_endpoint_is_admin_only(self) -> None:
        response = self.client.post("/api/v1/wallet", json={"amount": 50})
        self.assertEqual(response.status_code, 403)

        self.__class__.current_user_id = self.admin_user_id
        self.__class__.current_user_email = self.admin_email
        response = self.client.post(
            "/api/v1/wallet",
            json={"amount": 50, "type": "adjustment", "description": "Goodwill"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["new_balance"], "50")

    def test_credit_endpoint_rejects_usage_type(self) -> None:
        self.__class__.current_user_id = self.admin_user_id
        response = self.client.post("/api/v1/wallet", json={"amount": 5, "type": "usage"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_input")

    def test_admin_grant_to_other_user(self) -> None:
        self.__class__.current_user_id = self.admin_user_id
        response = self.client.post(f"/api/v1/admin/wallets/{self.user_id}/grant", json={"amount": 15})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["new_balance"], "15")

        response = self.client.get(f"/api/v1/admin/wallets/{self.user_id}")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["wallet"]["credits_balance"], "15")
        self.assertEqual(body["total_transactions"], 2)
        self.assertEqual(body["transactions"][0]["transaction_type"], "adjustment")

    def test_admin_wallet_lookup_missing_returns_404(self) -> None:
        self.__class__.current_user_id = self.admin_user_id
        response = self.client.get("/api/v1/admin/wallets/nobody")
        self.assertEqual(response.status_code, 404)

    def test_transactions_are_paged(self) -> None:
        self._credit(self.user_id, 10)
        response = self.client.get("/api/v1/wallet/transactions", params={"limit": 1})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total"], 2)
        self.assertEqual(len(body["transactions"]), 1)

    def test_checkout_without_payment_configuration_returns_503(self) -> None:
        response = self.client.post("/api/v1/wallet/checkout", json={"amount_usd": 25})
        self.assertEqual(response.status_code, 503)

    def test_checkout_creates_credit_session(self) -> None:
        gateway = self._fake_gateway()
        response = self.client.post("/api/v1/wallet/checkout", json={"amount_usd": 25})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["session_id"], "cs_test_1")
        self.assertEqual(body["minutes"], "25")

        gateway.create_customer.assert_awaited_once_with(email=self.user_email, user_id=self.user_id)
        kwargs = gateway.create_credit_checkout_session.await_args.kwargs
        self.assertEqual(kwargs["customer_id"], "cus_wallet")
        self.assertEqual(kwargs["amount_cents"], 2500)
        self.assertEqual(kwargs["user_id"], self.user_id)

    def test_checkout_amount_out_of_range_returns_400(self) -> None:
        self._fake_gateway()
        response = self.client.post("/api/v1/wallet/checkout", json={"amount_usd": 5000})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_input")

    def test_confirm_purchase_is_idempotent(self) -> None:
        gateway = self._fake_gateway()
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_confirm_1",
            "status": "succeeded",
            "amount_received": 2500,
            "metadata": {"user_id": self.user_id, "kind": "credits"},
        }

        first = self.client.post("/api/v1/wallet/purchases/confirm", json={"payment_intent_id": "pi_confirm_1"})
        second = self.client.post("/api/v1/wallet/purchases/confirm", json={"payment_intent_id": "pi_confirm_1"})

        self.assertEqual(first.status_code, 200)
        self.assertFalse(first.json()["already_processed"])
        self.assertEqual(first.json()["minutes"], "25")
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["already_processed"])
        self.assertEqual(self._balance(self.user_id), Decimal("25"))

    def test_confirm_purchase_for_another_user_returns_404(self) -> None:
        gateway = self._fake_gateway()
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_other",
            "status": "succeeded",
            "amount_received": 1000,
            "metadata": {"user_id": "someone-else", "kind": "credits"},
        }
        response = self.client.post("/api/v1/wallet/purchases/confirm", json={"payment_intent_id": "pi_other"})
        self.assertEqual(response.status_code, 404)

    def test_confirm_unfinished_purchase_returns_409(self) -> None:
        gateway = self._fake_gateway()
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_pending",
            "status": "processing",
            "amount": 1000,
            "metadata": {"user_id": self.user_id, "kind": "credits"},
        }
        response = self.client.post("/api/v1/wallet/purchases/confirm", json={"payment_intent_id": "pi_pending"})
        self.assertEqual(response.status_code, 409)


if __name__ == "__main__":
    unittest.main()
