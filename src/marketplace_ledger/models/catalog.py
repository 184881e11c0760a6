"""Products, subscriptions and tax rates."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_ledger.models.accounts import User
from marketplace_ledger.models.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """A product listed by a seller."""

    __tablename__ = "product"

    product_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    is_physical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_epublication: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recommendable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discover_fee_per_thousand: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    seller: Mapped[User] = relationship()


class Subscription(Base, TimestampMixin):
    """A recurring membership; each charge is its own purchase."""

    __tablename__ = "subscription"

    subscription_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    seller_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    product_id: Mapped[UUID] = mapped_column(ForeignKey("product.product_id"), nullable=False)
    # Started after the flat fee was introduced.
    flat_fee_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    mor_fee_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    original_purchase_id: Mapped[UUID | None] = mapped_column(nullable=True)


class ZipTaxRate(Base, TimestampMixin):
    """Tax rate for a country, state or zip code."""

    __tablename__ = "zip_tax_rate"

    zip_tax_rate_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    state: Mapped[str | None] = mapped_column(String(8), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    combined_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    is_seller_responsible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_epublication_rate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_id: Mapped[UUID | None] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=True)
    applicable_years: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_alive(self) -> bool:
        return self.deleted_at is None
