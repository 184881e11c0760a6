"""PayPal stub processor for local development and testing.

PayPal does not report a flow of funds; callers build a simple one from
the charged amount. Funds always settle with the seller (or the platform
for platform-held accounts) and there are no transfers to reverse.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from marketplace_ledger.models.accounts import ChargeProcessorId
from marketplace_ledger.money import USD, round_half_up
from marketplace_ledger.processors.base import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorInsufficientFundsError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
    ProcessorCharge,
    ProcessorRefund,
    TransferReversal,
)

if TYPE_CHECKING:
    from marketplace_ledger.models import MerchantAccount

logger = logging.getLogger(__name__)

PAYPAL_FEE_PER_THOUSAND = Decimal("34.9")
PAYPAL_FIXED_FEE_CENTS = 49


class PaypalStubProcessor:
    """Stub PayPal processor for development.

    In production, this would:
    - Create and capture orders through the PayPal Orders API
    - Split payments to the seller's PayPal account
    - Refund captures, failing when the seller's account is short
    """

    processor_id = ChargeProcessorId.PAYPAL.value

    def __init__(self, insufficient_funds: bool = False):
        """Initialize stub processor.

        Args:
            insufficient_funds: If True, refunds fail as if the seller's
                PayPal balance could not cover them.
        """
        self.insufficient_funds = insufficient_funds
        self.unavailable = False
        # In-memory tracking for stub
        self._captures: dict[str, dict[str, Any]] = {}

    def processor_fee_cents(self, amount_cents: int) -> int:
        return round_half_up(Decimal(amount_cents) * PAYPAL_FEE_PER_THOUSAND / 1000) + PAYPAL_FIXED_FEE_CENTS

    def create_charge(
        self,
        *,
        merchant_account: MerchantAccount,
        amount_cents: int,
        amount_for_platform_cents: int,
        reference: str = "",
    ) -> ProcessorCharge:
        if self.unavailable:
            raise ChargeProcessorUnavailableError("PayPal stub is unavailable", self.processor_id)
        if amount_cents <= 0:
            raise ChargeProcessorInvalidRequestError("Amount must be positive", self.processor_id)

        capture_id = f"PAYID-{uuid.uuid4().hex[:20].upper()}"
        self._captures[capture_id] = {
            "amount_cents": amount_cents,
            "refunded_cents": 0,
            "merchant_account_id": str(merchant_account.merchant_account_id),
            "reference": reference,
        }
        logger.debug("PayPal stub capture %s for %s cents", capture_id, amount_cents)
        return ProcessorCharge(
            charge_id=capture_id,
            flow_of_funds=None,
            fee_cents=self.processor_fee_cents(amount_cents),
            fee_currency=USD,
        )

    def refund(
        self,
        charge_id: str,
        *,
        amount_cents: int | None = None,
        merchant_account: MerchantAccount | None = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund:
        if self.unavailable:
            raise ChargeProcessorUnavailableError("PayPal stub is unavailable", self.processor_id)
        capture = self._captures.get(charge_id)
        if capture is None:
            raise ChargeProcessorInvalidRequestError(f"No such capture: {charge_id}", self.processor_id)

        remaining = capture["amount_cents"] - capture["refunded_cents"]
        if remaining <= 0:
            raise ChargeProcessorAlreadyRefundedError(
                f"Capture {charge_id} has already been refunded.", self.processor_id
            )
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise ChargeProcessorInvalidRequestError(
                f"Refund amount {amount} exceeds the capture's remaining {remaining}", self.processor_id
            )
        if self.insufficient_funds:
            raise ChargeProcessorInsufficientFundsError(
                "The seller's PayPal account does not have enough funds to cover this refund.",
                self.processor_id,
            )

        capture["refunded_cents"] += amount
        return ProcessorRefund(
            refund_id=f"REFUND-{uuid.uuid4().hex[:16].upper()}",
            charge_id=charge_id,
            flow_of_funds=None,
        )

    def debit_account_for_refund_fee(self, merchant_account: MerchantAccount, amount_cents_usd: int) -> int | None:
        return None

    def create_transfer(self, merchant_account: MerchantAccount, amount_cents: int, description: str) -> str:
        raise ChargeProcessorInvalidRequestError("PayPal does not support transfers", self.processor_id)

    def find_transfer(self, merchant_account: MerchantAccount, description: str) -> str | None:
        return None

    def transfer_for_charge(self, charge_id: str) -> str | None:
        return None

    def reverse_transfer(
        self,
        transfer_id: str,
        amount_cents: int,
        source_refund_id: str | None = None,
    ) -> TransferReversal:
        raise ChargeProcessorInvalidRequestError("PayPal does not support transfers", self.processor_id)

    def reversed_amount_for_refund(self, charge_id: str, refund_id: str | None) -> int:
        return 0
