"""Users, merchant accounts and affiliates."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, Numeric, String, UniqueConstraint, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from marketplace_ledger.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from marketplace_ledger.models.catalog import Product


class ChargeProcessorId(str, Enum):
    """Charge processors a merchant account can belong to."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    BRAINTREE = "braintree"


class HolderOfFunds(str, Enum):
    """Who holds the money collected on a merchant account."""

    PLATFORM = "platform"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SELLER = "seller"


class User(Base, TimestampMixin):
    """A seller, affiliate or staff member."""

    __tablename__ = "ledger_user"

    user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    refunds_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_team_member: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    waive_platform_fee_on_new_sales: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bears_affiliate_fee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Fraction of the price, e.g. 0.0750. None when tier pricing is off.
    tier_fee: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    # None falls back to LedgerConfig.merchant_of_record_fee.
    merchant_of_record_fee_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    merchant_accounts: Mapped[list[MerchantAccount]] = relationship(back_populates="user")

    @property
    def tier_pricing_enabled(self) -> bool:
        return self.tier_fee is not None

    @property
    def has_brazilian_stripe_connect_account(self) -> bool:
        return any(
            ma.active and ma.is_a_brazilian_stripe_connect_account for ma in self.merchant_accounts
        )

    def merchant_of_record_fee_active(self, default: bool) -> bool:
        if self.merchant_of_record_fee_enabled is None:
            return default
        return self.merchant_of_record_fee_enabled

    def __repr__(self) -> str:
        return f"<User {self.user_id} {self.email}>"


class MerchantAccount(Base, TimestampMixin):
    """An account at a charge processor that receives the money of a sale.

    Accounts without a user belong to the platform. Seller accounts are
    either managed by the platform (funds held by the processor on the
    platform's behalf) or connected (funds settle with the seller).
    """

    __tablename__ = "merchant_account"

    merchant_account_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=True)
    charge_processor_id: Mapped[str] = mapped_column(String(20), nullable=False)
    charge_processor_merchant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    holder_of_funds: Mapped[str] = mapped_column(
        String(20), nullable=False, default=HolderOfFunds.PLATFORM.value
    )
    is_connect_account: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            "holder_of_funds IN ('platform', 'stripe', 'paypal', 'seller')",
            name="merchant_account_holder_of_funds_ck",
        ),
    )

    user: Mapped[User | None] = relationship(back_populates="merchant_accounts")

    @property
    def is_managed_by_platform(self) -> bool:
        return self.user_id is None

    @property
    def is_a_stripe_connect_account(self) -> bool:
        return self.charge_processor_id == ChargeProcessorId.STRIPE.value and self.is_connect_account

    @property
    def is_a_paypal_connect_account(self) -> bool:
        return self.charge_processor_id == ChargeProcessorId.PAYPAL.value and self.user_id is not None

    @property
    def is_a_brazilian_stripe_connect_account(self) -> bool:
        return self.is_a_stripe_connect_account and self.country == "BR"

    def __repr__(self) -> str:
        return f"<MerchantAccount {self.merchant_account_id} {self.charge_processor_id}/{self.holder_of_funds}>"


def get_platform_merchant_account(session: Session, charge_processor_id: str) -> MerchantAccount:
    """Find or create the platform's own merchant account for a processor."""
    account = session.scalars(
        select(MerchantAccount)
        .where(
            MerchantAccount.user_id.is_(None),
            MerchantAccount.charge_processor_id == charge_processor_id,
        )
        .order_by(MerchantAccount.created_at)
        .limit(1)
    ).first()
    if account is None:
        account = MerchantAccount(
            charge_processor_id=charge_processor_id,
            charge_processor_merchant_id=f"platform-{charge_processor_id}",
            holder_of_funds=HolderOfFunds.PLATFORM.value,
            currency="usd",
            country="US",
        )
        session.add(account)
        session.flush()
    return account


class Affiliate(Base, TimestampMixin):
    """A user earning a cut of a seller's sales."""

    __tablename__ = "affiliate"

    affiliate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    seller_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    affiliate_user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    basis_points: Mapped[int] = mapped_column(Integer, nullable=False)
    is_collaborator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("basis_points >= 0 AND basis_points <= 10000", name="affiliate_basis_points_ck"),
    )

    seller: Mapped[User] = relationship(foreign_keys=[seller_id])
    affiliate_user: Mapped[User] = relationship(foreign_keys=[affiliate_user_id])
    product_affiliates: Mapped[list[ProductAffiliate]] = relationship(back_populates="affiliate")

    def basis_points_for(self, product_id: UUID | None) -> int:
        """Per-product override, falling back to the affiliate default."""
        for product_affiliate in self.product_affiliates:
            if product_affiliate.product_id == product_id and product_affiliate.basis_points is not None:
                return product_affiliate.basis_points
        return self.basis_points


class ProductAffiliate(Base):
    """Affiliate enrollment for a single product."""

    __tablename__ = "product_affiliate"

    product_affiliate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliate.affiliate_id"), nullable=False)
    product_id: Mapped[UUID] = mapped_column(ForeignKey("product.product_id"), nullable=False)
    basis_points: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("affiliate_id", "product_id", name="product_affiliate_uq"),
    )

    affiliate: Mapped[Affiliate] = relationship(back_populates="product_affiliates")
    product: Mapped[Product] = relationship()
