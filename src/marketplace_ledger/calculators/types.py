"""Type definitions for the fee, refund and tax calculators."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_ledger.money import ceil_cents

if TYPE_CHECKING:
    from marketplace_ledger.models import ZipTaxRate


@dataclass(frozen=True)
class FeeContext:
    """Everything the fee calculation needs to know about a purchase."""

    price_cents: int
    charged_using_platform_merchant_account: bool
    is_brazilian_connect_account: bool = False
    merchant_of_record_fee: bool = True

    # Seller pricing
    waive_platform_fee_on_new_sales: bool = False
    tier_fee: Decimal | None = None

    # Subscriptions and preorders
    has_subscription: bool = False
    subscription_flat_fee_applicable: bool = True
    subscription_mor_fee_applicable: bool = True
    is_recurring_subscription_charge: bool = False
    is_updated_original_subscription_purchase: bool = False
    is_preorder_charge: bool = False
    # Discover fee recorded on the original subscription purchase or the
    # preorder authorization.
    original_discover_fee_per_thousand: int = 0

    # Discover
    charge_discover_fee: bool = False
    product_discover_fee_per_thousand: int = 100

    @property
    def flat_fee_applicable(self) -> bool:
        """Flat fee applies unless this is a charge on a pre-flat-fee subscription."""
        return not self.has_subscription or self.subscription_flat_fee_applicable


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee calculation."""

    fee_cents: int
    fee_per_thousand: int = 0
    variable_fee_cents: int = 0
    fixed_fee_cents: int = 0
    was_discover_fee_charged: bool = False

    @classmethod
    def zero(cls) -> FeeBreakdown:
        return cls(fee_cents=0)


@dataclass(frozen=True)
class AffiliateSplit:
    """Affiliate share of a sale."""

    affiliate_credit_cents: int
    affiliate_fee: Decimal = Decimal("0")
    basis_points: int = 0

    @property
    def affiliate_fee_cents(self) -> int:
        """Affiliate share of the platform fee, rounded up."""
        return ceil_cents(self.affiliate_fee)


@dataclass(frozen=True)
class RefundAmounts:
    """Component amounts of a refund (or a sum of refunds)."""

    total_transaction_cents: int = 0
    amount_cents: int = 0
    fee_cents: int = 0
    creator_tax_cents: int = 0
    platform_tax_cents: int = 0

    def __add__(self, other: RefundAmounts) -> RefundAmounts:
        return RefundAmounts(
            total_transaction_cents=self.total_transaction_cents + other.total_transaction_cents,
            amount_cents=self.amount_cents + other.amount_cents,
            fee_cents=self.fee_cents + other.fee_cents,
            creator_tax_cents=self.creator_tax_cents + other.creator_tax_cents,
            platform_tax_cents=self.platform_tax_cents + other.platform_tax_cents,
        )


@dataclass(frozen=True)
class PurchaseAmounts:
    """Snapshot of a purchase's money fields and what was refunded so far."""

    price_cents: int
    total_transaction_cents: int
    fee_cents: int = 0
    tax_cents: int = 0
    platform_tax_cents: int = 0
    affiliate_credit_cents: int = 0
    affiliate_basis_points: int = 0
    affiliate_fee_cents: int = 0
    refunded: RefundAmounts = field(default_factory=RefundAmounts)

    @property
    def payment_cents(self) -> int:
        return self.price_cents - self.fee_cents

    @property
    def amount_refundable_cents(self) -> int:
        return self.price_cents - self.refunded.amount_cents

    @property
    def platform_tax_refundable_cents(self) -> int:
        return self.platform_tax_cents - self.refunded.platform_tax_cents

    @property
    def gross_amount_refundable_cents(self) -> int:
        return self.amount_refundable_cents + self.platform_tax_refundable_cents

    @property
    def platform_responsible_for_tax(self) -> bool:
        return self.platform_tax_cents > 0

    @property
    def seller_responsible_for_tax(self) -> bool:
        return not self.platform_responsible_for_tax and self.tax_cents > 0


@dataclass(frozen=True)
class BalanceDecrement:
    """How a refund or chargeback is taken out of the seller and affiliate."""

    seller_cents: int
    affiliate_cents: int = 0
    affiliate_fee_cents: int = 0


@dataclass
class SalesTaxCalculation:
    """Result of a sales tax calculation."""

    price_cents: int
    tax_cents: Decimal = Decimal("0")
    zip_tax_rate: ZipTaxRate | None = None
    business_vat_status: str | None = None
    is_quebec: bool = False

    @classmethod
    def zero_tax(cls, price_cents: int) -> SalesTaxCalculation:
        return cls(price_cents=price_cents)

    @classmethod
    def zero_business_vat(cls, price_cents: int) -> SalesTaxCalculation:
        return cls(price_cents=price_cents, business_vat_status="valid")

    @property
    def tax_rate(self) -> Decimal:
        return self.zip_tax_rate.combined_rate if self.zip_tax_rate is not None else Decimal("0")
