"""Seller and affiliate balances.

- Balances: one unpaid bucket per (user, merchant account, date, currency,
  holding currency), paid out as a unit
- Balance transactions: append-only record of every change to a balance
- Credits: manual or automatic adjustments (fee retention, VAT, disputes)
"""

from __future__ import annotations

import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_ledger.models.accounts import MerchantAccount, User
from marketplace_ledger.models.base import Base, TimestampMixin
from marketplace_ledger.models.purchase import Dispute, Purchase, Refund


class Balance(Base, TimestampMixin):
    """Money owed to a user for a day, held in a merchant account.

    amount_cents is in ``currency`` (the issued currency, USD), while
    holding_amount_cents is in the merchant account's ``holding_currency``.
    Amounts only change while the balance is unpaid.
    """

    __tablename__ = "balance"

    balance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    merchant_account_id: Mapped[UUID] = mapped_column(
        ForeignKey("merchant_account.merchant_account_id"), nullable=False
    )
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    holding_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    holding_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="unpaid")

    __table_args__ = (
        CheckConstraint(
            "state IN ('unpaid', 'processing', 'paid', 'forfeited')",
            name="balance_state_ck",
        ),
        Index(
            "balance_unpaid_lookup",
            "user_id", "merchant_account_id", "currency", "holding_currency", "state", "date",
        ),
    )

    user: Mapped[User] = relationship()
    merchant_account: Mapped[MerchantAccount] = relationship()

    @property
    def is_unpaid(self) -> bool:
        return self.state == "unpaid"

    def __repr__(self) -> str:
        return f"<Balance {self.date} {self.state} {self.amount_cents} {self.currency}>"


class Credit(Base, TimestampMixin):
    """An adjustment to a user's balance that is not a sale."""

    __tablename__ = "credit"

    credit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    merchant_account_id: Mapped[UUID] = mapped_column(
        ForeignKey("merchant_account.merchant_account_id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    crediting_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    dispute_id: Mapped[UUID | None] = mapped_column(ForeignKey("dispute.dispute_id"), nullable=True)
    chargebacked_purchase_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("purchase.purchase_id"), nullable=True
    )
    fee_retention_refund_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("refund.refund_id"), nullable=True
    )
    refund_id: Mapped[UUID | None] = mapped_column(ForeignKey("refund.refund_id"), nullable=True)
    balance_id: Mapped[UUID | None] = mapped_column(ForeignKey("balance.balance_id"), nullable=True)

    user: Mapped[User] = relationship(foreign_keys=[user_id])
    merchant_account: Mapped[MerchantAccount] = relationship()
    dispute: Mapped[Dispute | None] = relationship()
    fee_retention_refund: Mapped[Refund | None] = relationship(foreign_keys=[fee_retention_refund_id])
    refund: Mapped[Refund | None] = relationship(foreign_keys=[refund_id])
    balance: Mapped[Balance | None] = relationship()


class BalanceTransaction(Base, TimestampMixin):
    """A single change to a balance.

    Immutable once written except for balance_id, which is set right
    after the row is inserted. Exactly one of purchase, refund, dispute,
    credit is set.
    """

    __tablename__ = "balance_transaction"

    balance_transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("ledger_user.user_id"), nullable=False)
    merchant_account_id: Mapped[UUID] = mapped_column(
        ForeignKey("merchant_account.merchant_account_id"), nullable=False
    )
    purchase_id: Mapped[UUID | None] = mapped_column(ForeignKey("purchase.purchase_id"), nullable=True)
    refund_id: Mapped[UUID | None] = mapped_column(ForeignKey("refund.refund_id"), nullable=True)
    dispute_id: Mapped[UUID | None] = mapped_column(ForeignKey("dispute.dispute_id"), nullable=True)
    credit_id: Mapped[UUID | None] = mapped_column(ForeignKey("credit.credit_id"), nullable=True)

    issued_amount_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    issued_amount_gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_amount_net_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    holding_amount_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    holding_amount_gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    holding_amount_net_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    balance_id: Mapped[UUID | None] = mapped_column(ForeignKey("balance.balance_id"), nullable=True)

    __table_args__ = (
        CheckConstraint(
            """(CASE WHEN purchase_id IS NULL THEN 0 ELSE 1 END
              + CASE WHEN refund_id IS NULL THEN 0 ELSE 1 END
              + CASE WHEN dispute_id IS NULL THEN 0 ELSE 1 END
              + CASE WHEN credit_id IS NULL THEN 0 ELSE 1 END) = 1""",
            name="balance_transaction_one_source_ck",
        ),
        Index("balance_transaction_by_user", "user_id", "created_at"),
    )

    user: Mapped[User] = relationship()
    merchant_account: Mapped[MerchantAccount] = relationship()
    purchase: Mapped[Purchase | None] = relationship()
    refund: Mapped[Refund | None] = relationship()
    dispute: Mapped[Dispute | None] = relationship()
    credit: Mapped[Credit | None] = relationship()
    balance: Mapped[Balance | None] = relationship()
