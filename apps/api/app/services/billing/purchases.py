from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from apps.api.app.services.billing.errors import DuplicatePayment, InvalidAmount
from apps.api.app.services.billing.ledger import LedgerService

_LOGGER = logging.getLogger(__name__)

_MINUTE_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class PurchaseResult:
    transaction_id: str | None
    minutes: Decimal
    already_processed: bool


class CreditPurchaseGateway:
    """Turns a confirmed payment into wallet credit exactly once.

    Currency is converted to credit-minutes here and nowhere else; the ledger
    only ever sees minutes.
    """

    def __init__(self, ledger: LedgerService, credits_per_usd: Decimal) -> None:
        self._ledger = ledger
        self._credits_per_usd = credits_per_usd

    def minutes_for_amount(self, amount_usd: object) -> Decimal:
        try:
            amount = Decimal(str(amount_usd))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmount("amount must be a number.") from exc
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount("amount must be greater than zero.")
        return (amount * self._credits_per_usd).quantize(_MINUTE_QUANTUM, rounding=ROUND_HALF_UP)

    async def apply_confirmed_payment(
        self,
        *,
        user_id: str,
        amount_usd: object,
        confirmation_reference: str,
        description: str | None = None,
    ) -> PurchaseResult:
        if not confirmation_reference:
            raise InvalidAmount("A payment confirmation reference is required.")
        minutes = self.minutes_for_amount(amount_usd)

        existing = await self._ledger.find_transaction_by_payment_reference(confirmation_reference)
        if existing is not None:
            _LOGGER.info("Payment %s already credited as transaction %s", confirmation_reference, existing.id)
            return PurchaseResult(transaction_id=existing.id, minutes=minutes, already_processed=True)

        try:
            entry = await self._ledger.credit(
                user_id,
                minutes,
                "purchase",
                description or f"Purchased {minutes} minutes",
                payment_reference=confirmation_reference,
            )
        except DuplicatePayment:
            # A concurrent delivery of the same confirmation won the insert.
            _LOGGER.info("Payment %s credited concurrently; skipping", confirmation_reference)
            return PurchaseResult(transaction_id=None, minutes=minutes, already_processed=True)
        return PurchaseResult(transaction_id=entry.transaction_id, minutes=minutes, already_processed=False)
