"""Stripe stub processor for local development and testing.

Reproduces the money movement of Stripe destination charges without
calling Stripe:

- platform-held accounts keep the whole charge
- platform-managed seller accounts receive a transfer of the charge
  minus the application fee, in their holding currency
- connected accounts settle with the seller, the platform keeps the
  application fee

Replace with an adapter around the Stripe SDK for production.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_ledger.flow_of_funds import Amount, FlowOfFunds
from marketplace_ledger.models.accounts import ChargeProcessorId, HolderOfFunds
from marketplace_ledger.money import USD, round_half_up, usd_cents_to_currency
from marketplace_ledger.processors.base import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorCardError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorUnavailableError,
    ProcessorCharge,
    ProcessorRefund,
    TransferReversal,
)

if TYPE_CHECKING:
    from marketplace_ledger.models import MerchantAccount

logger = logging.getLogger(__name__)

STRIPE_FEE_PER_THOUSAND = Decimal("29")
STRIPE_FIXED_FEE_CENTS = 30


@dataclass
class _Transfer:
    transfer_id: str
    merchant_account_id: str
    amount_cents: int
    holding_currency: str
    description: str
    reversals: list[TransferReversal] = field(default_factory=list)

    @property
    def reversed_cents(self) -> int:
        return sum(r.amount_cents for r in self.reversals)


@dataclass
class _Charge:
    charge_id: str
    merchant_account_id: str
    topology: str  # platform, managed, connect
    holding_currency: str
    amount_cents: int
    amount_for_platform_cents: int
    refunded_cents: int = 0
    transfer_id: str | None = None


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def _topology(merchant_account: MerchantAccount) -> str:
    if merchant_account.is_managed_by_platform:
        return "platform"
    if merchant_account.is_connect_account:
        return "connect"
    return "managed"


class StripeStubProcessor:
    """Stub Stripe processor with in-memory charges and transfers."""

    processor_id = ChargeProcessorId.STRIPE.value

    def __init__(self, currency_rates: dict[str, Decimal] | None = None):
        """Initialize stub processor.

        Args:
            currency_rates: Units of currency per USD used when converting
                into a managed account's holding currency.
        """
        self.currency_rates = currency_rates or {}
        # In-memory tracking for stub
        self._charges: dict[str, _Charge] = {}
        self._transfers: dict[str, _Transfer] = {}
        self._refunds: dict[str, str] = {}
        self.fee_debits: list[tuple[str, int]] = []
        self._decline_next: str | None = None
        self.unavailable = False

    # --- simulation controls -------------------------------------------------

    def decline_next_charge(self, error_code: str = "card_declined") -> None:
        self._decline_next = error_code

    def _check_available(self) -> None:
        if self.unavailable:
            raise ChargeProcessorUnavailableError("Stripe stub is unavailable", self.processor_id)

    def _convert(self, currency: str, usd_cents: int) -> int:
        return usd_cents_to_currency(currency, usd_cents, self.currency_rates.get(currency))

    # --- charges -------------------------------------------------------------

    def processor_fee_cents(self, amount_cents: int) -> int:
        return round_half_up(Decimal(amount_cents) * STRIPE_FEE_PER_THOUSAND / 1000) + STRIPE_FIXED_FEE_CENTS

    def create_charge(
        self,
        *,
        merchant_account: MerchantAccount,
        amount_cents: int,
        amount_for_platform_cents: int,
        reference: str = "",
    ) -> ProcessorCharge:
        self._check_available()
        if self._decline_next is not None:
            error_code, self._decline_next = self._decline_next, None
            raise ChargeProcessorCardError("Your card was declined.", self.processor_id, error_code)
        if amount_cents <= 0:
            raise ChargeProcessorInvalidRequestError("Amount must be positive", self.processor_id)

        topology = _topology(merchant_account)
        charge = _Charge(
            charge_id=_new_id("ch"),
            merchant_account_id=str(merchant_account.merchant_account_id),
            topology=topology,
            holding_currency=merchant_account.currency if topology == "managed" else USD,
            amount_cents=amount_cents,
            amount_for_platform_cents=amount_cents if topology == "platform" else amount_for_platform_cents,
        )

        issued = Amount(USD, amount_cents)
        platform_amount = Amount(USD, charge.amount_for_platform_cents)
        gross = net = None
        if topology == "managed":
            seller_cents = amount_cents - amount_for_platform_cents
            transfer = _Transfer(
                transfer_id=_new_id("tr"),
                merchant_account_id=charge.merchant_account_id,
                amount_cents=seller_cents,
                holding_currency=charge.holding_currency,
                description=f"Charge {charge.charge_id} {reference}".strip(),
            )
            self._transfers[transfer.transfer_id] = transfer
            charge.transfer_id = transfer.transfer_id
            gross = Amount(charge.holding_currency, self._convert(charge.holding_currency, amount_cents))
            net = Amount(charge.holding_currency, self._convert(charge.holding_currency, seller_cents))

        self._charges[charge.charge_id] = charge
        logger.debug("Stripe stub charge %s for %s cents (%s)", charge.charge_id, amount_cents, topology)

        return ProcessorCharge(
            charge_id=charge.charge_id,
            flow_of_funds=FlowOfFunds(
                issued_amount=issued,
                settled_amount=issued,
                platform_amount=platform_amount,
                merchant_account_gross_amount=gross,
                merchant_account_net_amount=net,
            ),
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
        self._check_available()
        charge = self._charges.get(charge_id)
        if charge is None:
            raise ChargeProcessorInvalidRequestError(f"No such charge: {charge_id}", self.processor_id)

        remaining = charge.amount_cents - charge.refunded_cents
        if remaining <= 0:
            raise ChargeProcessorAlreadyRefundedError(
                f"Charge {charge_id} has already been refunded.", self.processor_id
            )
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise ChargeProcessorInvalidRequestError(
                f"Refund amount {amount} is greater than unrefunded amount {remaining}", self.processor_id
            )

        charge.refunded_cents += amount
        refund_id = _new_id("re")
        self._refunds[refund_id] = charge_id

        issued = Amount(USD, -amount)
        if charge.topology == "platform":
            flow = FlowOfFunds(issued_amount=issued, settled_amount=issued, platform_amount=issued)
        elif charge.topology == "connect":
            flow = FlowOfFunds(issued_amount=issued, settled_amount=issued, platform_amount=Amount(USD, 0))
        else:
            reversed_usd = 0
            reversed_holding = 0
            if reverse_transfer and charge.transfer_id is not None:
                transfer = self._transfers[charge.transfer_id]
                reversed_usd = round_half_up(
                    Decimal(transfer.amount_cents) * amount / charge.amount_cents
                )
                reversed_usd = min(reversed_usd, transfer.amount_cents - transfer.reversed_cents)
                reversal = self.reverse_transfer(charge.transfer_id, reversed_usd, source_refund_id=refund_id)
                reversed_holding = reversal.holding_amount_cents
            flow = FlowOfFunds(
                issued_amount=issued,
                settled_amount=issued,
                platform_amount=Amount(USD, -(amount - reversed_usd)),
                merchant_account_gross_amount=Amount(
                    charge.holding_currency, -self._convert(charge.holding_currency, amount)
                ),
                merchant_account_net_amount=Amount(charge.holding_currency, -reversed_holding),
            )

        logger.debug("Stripe stub refund %s of %s cents on %s", refund_id, amount, charge_id)
        return ProcessorRefund(refund_id=refund_id, charge_id=charge_id, flow_of_funds=flow)

    # --- transfers -------------------------------------------------------------

    def create_transfer(self, merchant_account: MerchantAccount, amount_cents: int, description: str) -> str:
        self._check_available()
        transfer = _Transfer(
            transfer_id=_new_id("tr"),
            merchant_account_id=str(merchant_account.merchant_account_id),
            amount_cents=amount_cents,
            holding_currency=merchant_account.currency,
            description=description,
        )
        self._transfers[transfer.transfer_id] = transfer
        return transfer.transfer_id

    def find_transfer(self, merchant_account: MerchantAccount, description: str) -> str | None:
        account_id = str(merchant_account.merchant_account_id)
        for transfer in reversed(list(self._transfers.values())):
            if transfer.merchant_account_id == account_id and description in transfer.description:
                return transfer.transfer_id
        return None

    def transfer_for_charge(self, charge_id: str) -> str | None:
        charge = self._charges.get(charge_id)
        return charge.transfer_id if charge else None

    def reverse_transfer(
        self,
        transfer_id: str,
        amount_cents: int,
        source_refund_id: str | None = None,
    ) -> TransferReversal:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            raise ChargeProcessorInvalidRequestError(f"No such transfer: {transfer_id}", self.processor_id)
        if amount_cents > transfer.amount_cents - transfer.reversed_cents:
            raise ChargeProcessorInvalidRequestError(
                f"Cannot reverse {amount_cents} from transfer {transfer_id}", self.processor_id
            )
        reversal = TransferReversal(
            reversal_id=_new_id("trr"),
            transfer_id=transfer_id,
            amount_cents=amount_cents,
            holding_amount_cents=self._convert(transfer.holding_currency, amount_cents),
            source_refund_id=source_refund_id,
        )
        transfer.reversals.append(reversal)
        return reversal

    def reversed_amount_for_refund(self, charge_id: str, refund_id: str | None) -> int:
        transfer_id = self.transfer_for_charge(charge_id)
        if transfer_id is None or refund_id is None:
            return 0
        return sum(
            r.amount_cents
            for r in self._transfers[transfer_id].reversals
            if r.source_refund_id == refund_id
        )

    def debit_account_for_refund_fee(self, merchant_account: MerchantAccount, amount_cents_usd: int) -> int | None:
        """Debit a retained refund fee from a managed Stripe account.

        US accounts accept debit transfers. Elsewhere the fee is reversed
        from the most recent transfer that can cover it.
        """
        self._check_available()
        if merchant_account.holder_of_funds != HolderOfFunds.STRIPE.value:
            return None

        holding_cents = self._convert(merchant_account.currency, amount_cents_usd)
        if merchant_account.country == "US":
            self.fee_debits.append((str(merchant_account.merchant_account_id), amount_cents_usd))
            return holding_cents

        account_id = str(merchant_account.merchant_account_id)
        for transfer in reversed(list(self._transfers.values())):
            if transfer.merchant_account_id != account_id:
                continue
            if transfer.amount_cents - transfer.reversed_cents >= amount_cents_usd:
                reversal = self.reverse_transfer(transfer.transfer_id, amount_cents_usd)
                self.fee_debits.append((account_id, amount_cents_usd))
                return reversal.holding_amount_cents
        logger.warning("No transfer to %s can cover a %s cent fee debit", account_id, amount_cents_usd)
        return None
