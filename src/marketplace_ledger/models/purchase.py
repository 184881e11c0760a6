"""Purchases and the money records hanging off them.

Covers:
- Purchases (fees, taxes, affiliate credit, refund and chargeback flags)
- Refunds (one row per full or partial refund)
- Disputes (chargebacks)
- Affiliate credits and affiliate partial refunds
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_ledger.calculators.types import PurchaseAmounts, RefundAmounts
from marketplace_ledger.flow_of_funds import FlowOfFunds
from marketplace_ledger.models.accounts import Affiliate, ChargeProcessorId, MerchantAccount, User
from marketplace_ledger.models.base import Base, TimestampMixin
from marketplace_ledger.models.catalog import Product, Subscription, ZipTaxRate

if TYPE_CHECKING:
    from marketplace_ledger.models.balance import Balance


class Purchase(Base, TimestampMixin):
    """A sale of a product.

    Money columns are USD cents:
    - price_cents: what the seller sells for, including seller-collected tax
      and shipping (excluding platform-collected tax)
    - total_transaction_cents: what the buyer was charged
    - fee_cents: the platform fee (including processor fees)
    - tax_cents: tax the seller is responsible for
    - platform_tax_cents: tax the platform collects and remits
    """

    __tablename__ = "purchase"

    purchase_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    seller_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    product_id: Mapped[UUID] = mapped_column(ForeignKey("product.product_id"), nullable=False)
    merchant_account_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("merchant_account.merchant_account_id"), nullable=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("subscription.subscription_id"), nullable=True
    )
    affiliate_id: Mapped[UUID | None] = mapped_column(ForeignKey("affiliate.affiliate_id"), nullable=True)
    preorder_authorization_purchase_id: Mapped[UUID | None] = mapped_column(nullable=True)

    purchase_state: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    charge_processor_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    processor_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    displayed_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    displayed_price_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    rate_converted_to_usd: Mapped[Decimal | None] = mapped_column(Numeric(14, 6), nullable=True)

    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_transaction_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    affiliate_credit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processor_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processor_fee_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    was_discover_fee_charged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discover_fee_per_thousand: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    was_product_recommended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_recurring_subscription_charge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_updated_original_subscription_purchase: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    is_preorder_charge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_free_trial_purchase: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    is_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_partially_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    chargeback_date: Mapped[datetime | None] = mapped_column(nullable=True)
    chargeback_reversed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_refund_chargeback_fee_waived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paypal_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Buyer location
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    state: Mapped[str | None] = mapped_column(String(8), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    business_vat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    zip_tax_rate_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("zip_tax_rate.zip_tax_rate_id"), nullable=True
    )

    succeeded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    purchase_success_balance_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("balance.balance_id"), nullable=True
    )
    purchase_refund_balance_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("balance.balance_id"), nullable=True
    )
    purchase_chargeback_balance_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("balance.balance_id"), nullable=True
    )
    flow_of_funds_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "purchase_state IN ('in_progress', 'successful', 'failed', 'not_charged')",
            name="purchase_state_ck",
        ),
        CheckConstraint("fee_cents >= 0", name="purchase_fee_nonneg_ck"),
        Index("purchase_by_seller", "seller_id", "purchase_state"),
    )

    seller: Mapped[User] = relationship(foreign_keys=[seller_id])
    product: Mapped[Product] = relationship()
    merchant_account: Mapped[MerchantAccount | None] = relationship()
    subscription: Mapped[Subscription | None] = relationship()
    affiliate: Mapped[Affiliate | None] = relationship()
    zip_tax_rate: Mapped[ZipTaxRate | None] = relationship()
    refunds: Mapped[list[Refund]] = relationship(
        back_populates="purchase", order_by="Refund.created_at"
    )
    dispute: Mapped[Dispute | None] = relationship(back_populates="purchase", uselist=False)
    affiliate_credit: Mapped[AffiliateCredit | None] = relationship(
        back_populates="purchase", uselist=False
    )
    affiliate_partial_refunds: Mapped[list[AffiliatePartialRefund]] = relationship(
        back_populates="purchase"
    )
    purchase_success_balance: Mapped[Balance | None] = relationship(
        foreign_keys=[purchase_success_balance_id]
    )
    purchase_refund_balance: Mapped[Balance | None] = relationship(
        foreign_keys=[purchase_refund_balance_id]
    )
    purchase_chargeback_balance: Mapped[Balance | None] = relationship(
        foreign_keys=[purchase_chargeback_balance_id]
    )

    # --- state -------------------------------------------------------------

    @property
    def is_successful(self) -> bool:
        return self.purchase_state == "successful"

    @property
    def succeeded_on(self) -> date | None:
        return self.succeeded_at.date() if self.succeeded_at else None

    @property
    def chargedback(self) -> bool:
        return self.chargeback_date is not None

    @property
    def chargedback_not_reversed(self) -> bool:
        return self.chargedback and not self.chargeback_reversed

    # --- money -------------------------------------------------------------

    @property
    def payment_cents(self) -> int:
        """What the seller keeps before the affiliate cut."""
        return self.price_cents - self.fee_cents

    @property
    def total_transaction_amount_for_platform_cents(self) -> int:
        return self.fee_cents + self.affiliate_credit_cents + self.platform_tax_cents

    @property
    def refunded_amounts(self) -> RefundAmounts:
        total = RefundAmounts()
        for refund in self.refunds:
            total = total + refund.amounts
        return total

    @property
    def amount_refunded_cents(self) -> int:
        return sum(refund.amount_cents for refund in self.refunds)

    @property
    def fee_refunded_cents(self) -> int:
        return sum(refund.fee_cents for refund in self.refunds)

    @property
    def platform_tax_refunded_cents(self) -> int:
        return sum(refund.platform_tax_cents for refund in self.refunds)

    @property
    def gross_amount_refunded_cents(self) -> int:
        return self.amount_refunded_cents + self.platform_tax_refunded_cents

    @property
    def amount_refundable_cents(self) -> int:
        if self.charge_processor_id not in {p.value for p in ChargeProcessorId}:
            return 0
        return self.price_cents - self.amount_refunded_cents

    @property
    def platform_tax_refundable_cents(self) -> int:
        return self.platform_tax_cents - self.platform_tax_refunded_cents

    @property
    def gross_amount_refundable_cents(self) -> int:
        return self.amount_refundable_cents + self.platform_tax_refundable_cents

    @property
    def platform_responsible_for_tax(self) -> bool:
        return self.platform_tax_cents > 0

    @property
    def seller_responsible_for_tax(self) -> bool:
        return not self.platform_responsible_for_tax and self.tax_cents > 0

    @property
    def vat_already_refunded(self) -> bool:
        return self.platform_tax_cents > 0 and self.platform_tax_cents == self.platform_tax_refunded_cents

    def amounts(self) -> PurchaseAmounts:
        """Immutable snapshot for the refund calculator."""
        credit = self.affiliate_credit
        return PurchaseAmounts(
            price_cents=self.price_cents,
            total_transaction_cents=self.total_transaction_cents,
            fee_cents=self.fee_cents,
            tax_cents=self.tax_cents,
            platform_tax_cents=self.platform_tax_cents,
            affiliate_credit_cents=self.affiliate_credit_cents,
            affiliate_basis_points=credit.basis_points if credit else 0,
            affiliate_fee_cents=credit.fee_cents if credit else 0,
            refunded=self.refunded_amounts,
        )

    # --- merchant account topology ------------------------------------------

    @property
    def charged_using_stripe_connect_account(self) -> bool:
        return self.merchant_account is not None and self.merchant_account.is_a_stripe_connect_account

    @property
    def charged_using_platform_merchant_account(self) -> bool:
        """True when the platform controls the funds and tracks the seller's balance."""
        if self.merchant_account is not None and self.merchant_account.is_managed_by_platform:
            return True
        return (
            self.charge_processor_id == ChargeProcessorId.STRIPE.value
            and not self.charged_using_stripe_connect_account
        )

    def seller_balance_update_eligible(self, partially_refunded_previously: bool = False) -> bool:
        """Whether a refund or chargeback may still move the seller's balance.

        Not after an unreversed chargeback, and not after a full refund
        unless this refund completes earlier partial refunds.
        """
        chargeback_ok = self.purchase_chargeback_balance_id is None or self.chargeback_reversed
        refund_ok = (
            self.purchase_refund_balance_id is None
            or self.is_partially_refunded
            or partially_refunded_previously
        )
        return chargeback_ok and refund_ok

    @property
    def flow_of_funds(self) -> FlowOfFunds | None:
        if not self.flow_of_funds_json:
            return None
        return FlowOfFunds.from_dict(self.flow_of_funds_json)

    @flow_of_funds.setter
    def flow_of_funds(self, value: FlowOfFunds | None) -> None:
        self.flow_of_funds_json = value.to_dict() if value is not None else None

    def __repr__(self) -> str:
        return f"<Purchase {self.purchase_id} {self.purchase_state} price={self.price_cents}>"


class Refund(Base, TimestampMixin):
    """A full or partial refund of a purchase."""

    __tablename__ = "refund"

    refund_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(ForeignKey("purchase.purchase_id"), nullable=False)
    total_transaction_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    creator_tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retained_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    processor_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunding_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    is_for_fraud: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_vat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("total_transaction_cents >= 0", name="refund_total_nonneg_ck"),
        CheckConstraint("amount_cents >= 0", name="refund_amount_nonneg_ck"),
    )

    purchase: Mapped[Purchase] = relationship(back_populates="refunds")

    @property
    def amounts(self) -> RefundAmounts:
        return RefundAmounts(
            total_transaction_cents=self.total_transaction_cents,
            amount_cents=self.amount_cents,
            fee_cents=self.fee_cents,
            creator_tax_cents=self.creator_tax_cents,
            platform_tax_cents=self.platform_tax_cents,
        )

    @classmethod
    def from_amounts(cls, amounts: RefundAmounts, **kwargs: Any) -> Refund:
        return cls(
            total_transaction_cents=amounts.total_transaction_cents,
            amount_cents=amounts.amount_cents,
            fee_cents=amounts.fee_cents,
            creator_tax_cents=amounts.creator_tax_cents,
            platform_tax_cents=amounts.platform_tax_cents,
            **kwargs,
        )


class Dispute(Base, TimestampMixin):
    """A chargeback raised by the buyer's card issuer."""

    __tablename__ = "dispute"

    dispute_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase.purchase_id"), nullable=False, unique=True
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="formalized")
    charge_processor_dispute_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    formalized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    won_at: Mapped[datetime | None] = mapped_column(nullable=True)
    lost_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("state IN ('formalized', 'won', 'lost')", name="dispute_state_ck"),
    )

    purchase: Mapped[Purchase] = relationship(back_populates="dispute")


class AffiliateCredit(Base, TimestampMixin):
    """The affiliate's share of a purchase."""

    __tablename__ = "affiliate_credit"

    affiliate_credit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(
        ForeignKey("purchase.purchase_id"), nullable=False, unique=True
    )
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliate.affiliate_id"), nullable=False)
    affiliate_user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    seller_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    basis_points: Mapped[int] = mapped_column(Integer, nullable=False)
    success_balance_id: Mapped[UUID | None] = mapped_column(ForeignKey("balance.balance_id"), nullable=True)
    refund_balance_id: Mapped[UUID | None] = mapped_column(ForeignKey("balance.balance_id"), nullable=True)
    chargeback_balance_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("balance.balance_id"), nullable=True
    )

    purchase: Mapped[Purchase] = relationship(back_populates="affiliate_credit")
    affiliate: Mapped[Affiliate] = relationship()
    affiliate_user: Mapped[User] = relationship(foreign_keys=[affiliate_user_id])


class AffiliatePartialRefund(Base, TimestampMixin):
    """Part of an affiliate credit taken back by a partial refund or chargeback."""

    __tablename__ = "affiliate_partial_refund"

    affiliate_partial_refund_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(ForeignKey("purchase.purchase_id"), nullable=False)
    affiliate_credit_id: Mapped[UUID] = mapped_column(
        ForeignKey("affiliate_credit.affiliate_credit_id"), nullable=False
    )
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliate.affiliate_id"), nullable=False)
    affiliate_user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    seller_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    total_credit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_id: Mapped[UUID | None] = mapped_column(ForeignKey("balance.balance_id"), nullable=True)

    purchase: Mapped[Purchase] = relationship(back_populates="affiliate_partial_refunds")
