from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.app.api.v1.routes.wallet import transaction_to_read, wallet_to_read
from apps.api.app.db.models import CreditWallet
from apps.api.app.db.session import get_db
from apps.api.app.dependencies.billing import get_ledger_service, require_admin
from apps.api.app.schemas.wallet import AdminCreditRequest, AdminWalletRead, LedgerEntryRead
from apps.api.app.services.billing.ledger import LedgerService
from apps.api.app.utils.decimal_format import format_decimal

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/wallets/{user_id}", response_model=AdminWalletRead)
async def get_wallet_for_user(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    _: dict[str, str] = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerService = Depends(get_ledger_service),
) -> AdminWalletRead:
    wallet = await db.scalar(select(CreditWallet).where(CreditWallet.user_id == user_id))
    if wallet is None:
        raise HTTPException(status_code=404, detail="Wallet not found.")
    rows, total = await ledger.list_transactions(user_id, limit=limit)
    return AdminWalletRead(
        wallet=wallet_to_read(wallet),
        transactions=[transaction_to_read(row) for row in rows],
        total_transactions=total,
    )


@router.post("/wallets/{user_id}/grant", response_model=LedgerEntryRead)
async def grant_wallet_credits(
    user_id: str,
    payload: AdminCreditRequest,
    admin_user: dict[str, str] = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryRead:
    entry = await ledger.credit(
        user_id,
        payload.amount,
        payload.type,
        payload.note or f"Granted by admin {admin_user['user_id']}",
    )
    return LedgerEntryRead(transaction_id=entry.transaction_id, new_balance=format_decimal(entry.new_balance))
