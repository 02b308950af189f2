from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.core.config import Settings, get_settings
from apps.api.app.db.models import CreditTransaction, CreditWallet
from apps.api.app.db.session import get_db
from apps.api.app.dependencies.auth import get_current_user
from apps.api.app.dependencies.billing import (
    get_ledger_service,
    get_purchase_gateway,
    get_stripe_gateway,
    require_admin,
)
from apps.api.app.schemas.wallet import (
    CreditCheckoutCreate,
    CreditCheckoutRead,
    CreditRequest,
    DebitRequest,
    LedgerEntryRead,
    PurchaseConfirmCreate,
    PurchaseConfirmRead,
    TransactionListRead,
    TransactionRead,
    WalletOverviewRead,
    WalletRead,
)
from apps.api.app.services.billing.customers import ensure_profile, get_or_create_customer
from apps.api.app.services.billing.errors import InvalidAmount
from apps.api.app.services.billing.ledger import LedgerEntry, LedgerService
from apps.api.app.services.billing.purchases import CreditPurchaseGateway
from apps.api.app.services.billing.stripe_client import StripeGateway
from apps.api.app.utils.decimal_format import format_decimal

router = APIRouter(prefix="/wallet", tags=["wallet"])

RECENT_TRANSACTIONS_LIMIT = 10


def wallet_to_read(wallet: CreditWallet) -> WalletRead:
    balance = wallet.balance if wallet.balance is not None else Decimal("0")
    return WalletRead(
        id=wallet.id,
        user_id=wallet.user_id,
        credits_balance=format_decimal(Decimal(str(balance))),
        created_at=wallet.created_at,
        updated_at=wallet.updated_at,
    )


def transaction_to_read(row: CreditTransaction) -> TransactionRead:
    return TransactionRead(
        id=row.id,
        amount=format_decimal(Decimal(str(row.amount))),
        transaction_type=row.transaction_type,
        description=row.description,
        agent_reference=row.agent_reference,
        payment_reference=row.payment_reference,
        created_at=row.created_at,
    )


def _entry_to_read(entry: LedgerEntry) -> LedgerEntryRead:
    return LedgerEntryRead(transaction_id=entry.transaction_id, new_balance=format_decimal(entry.new_balance))


@router.get("", response_model=WalletOverviewRead)
async def get_my_wallet(
    current_user: dict[str, str] = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> WalletOverviewRead:
    user_id = current_user["user_id"]
    wallet = await ledger.ensure_wallet(user_id)
    transactions, _ = await ledger.list_transactions(user_id, limit=RECENT_TRANSACTIONS_LIMIT)
    return WalletOverviewRead(
        wallet=wallet_to_read(wallet),
        transactions=[transaction_to_read(row) for row in transactions],
    )


@router.post("", response_model=LedgerEntryRead)
async def add_credits(
    payload: CreditRequest,
    current_user: dict[str, str] = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryRead:
    entry = await ledger.credit(
        current_user["user_id"],
        payload.amount,
        payload.type,
        payload.description,
    )
    return _entry_to_read(entry)


@router.post("/deduct", response_model=LedgerEntryRead)
async def deduct_credits(
    payload: DebitRequest,
    current_user: dict[str, str] = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryRead:
    entry = await ledger.debit(
        current_user["user_id"],
        payload.minutes,
        payload.agent_reference,
        payload.description or f"Call minutes used by agent {payload.agent_reference}",
    )
    return _entry_to_read(entry)


@router.get("/transactions", response_model=TransactionListRead)
async def get_my_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: dict[str, str] = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> TransactionListRead:
    rows, total = await ledger.list_transactions(current_user["user_id"], limit=limit, offset=offset)
    return TransactionListRead(transactions=[transaction_to_read(row) for row in rows], total=total)


@router.post("/checkout", response_model=CreditCheckoutRead)
async def create_credit_checkout(
    payload: CreditCheckoutCreate,
    current_user: dict[str, str] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    purchases: CreditPurchaseGateway = Depends(get_purchase_gateway),
) -> CreditCheckoutRead:
    if payload.amount_usd < settings.top_up_min_usd or payload.amount_usd > settings.top_up_max_usd:
        raise InvalidAmount(
            f"amount_usd must be between {settings.top_up_min_usd:.2f} and {settings.top_up_max_usd:.2f}"
        )
    minutes = format_decimal(purchases.minutes_for_amount(payload.amount_usd))

    profile = await ensure_profile(db, user_id=current_user["user_id"], email=current_user["email"])
    customer_id = await get_or_create_customer(db, gateway, profile)
    session = await gateway.create_credit_checkout_session(
        customer_id=customer_id,
        user_id=profile.id,
        amount_cents=int(round(payload.amount_usd * 100)),
        minutes=minutes,
        success_url=f"{settings.app_base_url}/dashboard/billing?purchase=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.app_base_url}/dashboard/billing?purchase=canceled",
    )
    session_id = session.get("id")
    if not isinstance(session_id, str) or not session_id:
        raise HTTPException(status_code=502, detail="checkout session creation failed")
    return CreditCheckoutRead(
        session_id=session_id,
        url=session.get("url"),
        amount_usd=payload.amount_usd,
        minutes=minutes,
    )


@router.post("/purchases/confirm", response_model=PurchaseConfirmRead)
async def confirm_purchase(
    payload: PurchaseConfirmCreate,
    current_user: dict[str, str] = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    purchases: CreditPurchaseGateway = Depends(get_purchase_gateway),
) -> PurchaseConfirmRead:
    intent = await gateway.retrieve_payment_intent(payload.payment_intent_id)
    metadata = intent.get("metadata") or {}
    if metadata.get("user_id") != current_user["user_id"] or metadata.get("kind") != "credits":
        raise HTTPException(status_code=404, detail="payment not found")
    if intent.get("status") != "succeeded":
        raise HTTPException(status_code=409, detail="payment not completed")

    amount_cents = intent.get("amount_received") or intent.get("amount") or 0
    result = await purchases.apply_confirmed_payment(
        user_id=current_user["user_id"],
        amount_usd=Decimal(int(amount_cents)) / 100,
        confirmation_reference=str(intent.get("id") or payload.payment_intent_id),
    )
    return PurchaseConfirmRead(
        transaction_id=result.transaction_id,
        minutes=format_decimal(result.minutes),
        already_processed=result.already_processed,
    )
