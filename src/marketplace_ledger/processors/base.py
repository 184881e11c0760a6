"""Base protocol and types for charge processors.

All processor adapters must implement the ChargeProcessor protocol. The
ledger services only talk to processors through it, so real SDK adapters
and the in-memory stubs are interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from marketplace_ledger.flow_of_funds import FlowOfFunds

if TYPE_CHECKING:
    from marketplace_ledger.models import MerchantAccount


class ChargeProcessorError(Exception):
    """Base class for charge processor failures."""

    def __init__(self, message: str, processor_id: str | None = None):
        self.processor_id = processor_id
        super().__init__(message)


class ChargeProcessorAlreadyRefundedError(ChargeProcessorError):
    """The charge has already been fully refunded."""


class ChargeProcessorInsufficientFundsError(ChargeProcessorError):
    """The seller's account cannot cover the refund."""


class ChargeProcessorInvalidRequestError(ChargeProcessorError):
    """The processor rejected the request (bad amount, unknown charge...)."""


class ChargeProcessorUnavailableError(ChargeProcessorError):
    """The processor could not be reached or timed out."""


class ChargeProcessorCardError(ChargeProcessorError):
    """The buyer's payment method was declined."""

    def __init__(self, message: str, processor_id: str | None = None, error_code: str = "card_declined"):
        self.error_code = error_code
        super().__init__(message, processor_id)


@dataclass(frozen=True)
class ProcessorCharge:
    """Result of charging a buyer."""

    charge_id: str
    flow_of_funds: FlowOfFunds | None
    fee_cents: int | None = None
    fee_currency: str | None = None
    status: str = "succeeded"


@dataclass(frozen=True)
class ProcessorRefund:
    """Result of refunding a charge (fully or partially)."""

    refund_id: str
    charge_id: str
    flow_of_funds: FlowOfFunds | None
    status: str = "succeeded"


@dataclass(frozen=True)
class TransferReversal:
    """Money pulled back from a platform-managed seller account."""

    reversal_id: str
    transfer_id: str
    amount_cents: int
    holding_amount_cents: int
    source_refund_id: str | None = None


class ChargeProcessor(Protocol):
    """Protocol for charge processor adapters."""

    processor_id: str

    def create_charge(
        self,
        *,
        merchant_account: MerchantAccount,
        amount_cents: int,
        amount_for_platform_cents: int,
        reference: str = "",
    ) -> ProcessorCharge:
        """Charge the buyer ``amount_cents`` USD.

        On seller accounts ``amount_for_platform_cents`` is kept by the
        platform (application fee); the rest goes to the seller's account.

        Raises:
            ChargeProcessorCardError: the payment method was declined
            ChargeProcessorUnavailableError: the processor is down
        """
        ...

    def refund(
        self,
        charge_id: str,
        *,
        amount_cents: int | None = None,
        merchant_account: MerchantAccount | None = None,
        reverse_transfer: bool = True,
        is_for_fraud: bool = False,
    ) -> ProcessorRefund:
        """Refund a charge. ``amount_cents=None`` refunds what is left of it."""
        ...

    def debit_account_for_refund_fee(self, merchant_account: MerchantAccount, amount_cents_usd: int) -> int | None:
        """Take a retained refund fee back from a platform-managed account.

        Returns:
            Amount actually debited in the account's holding currency, or
            None when nothing could be debited
        """
        ...

    def create_transfer(self, merchant_account: MerchantAccount, amount_cents: int, description: str) -> str:
        """Transfer platform funds to a managed seller account. Returns transfer id."""
        ...

    def find_transfer(self, merchant_account: MerchantAccount, description: str) -> str | None:
        """Find a transfer to the account whose description contains ``description``."""
        ...

    def transfer_for_charge(self, charge_id: str) -> str | None:
        """Id of the transfer that moved a charge's funds to the seller account."""
        ...

    def reverse_transfer(
        self,
        transfer_id: str,
        amount_cents: int,
        source_refund_id: str | None = None,
    ) -> TransferReversal:
        """Pull back part of a transfer."""
        ...

    def reversed_amount_for_refund(self, charge_id: str, refund_id: str | None) -> int:
        """USD cents already reversed from the charge's transfer for a refund."""
        ...
