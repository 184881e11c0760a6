"""Balance posting service.

Every change to a user's balance goes through a BalanceTransaction:
- the transaction is written first and never changed afterwards (except
  for the balance it was applied to)
- it is then applied to an unpaid Balance bucket, locked while updating
- only unpaid balances change amounts; a balance that left the unpaid
  state between selection and locking is retried with a fresh selection
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace_ledger.events import BalanceStateChanged, BalanceTransactionPosted, EventEmitter, EventMetadata
from marketplace_ledger.flow_of_funds import FlowOfFunds
from marketplace_ledger.models import (
    Balance,
    BalanceTransaction,
    Credit,
    Dispute,
    MerchantAccount,
    Purchase,
    Refund,
    User,
    utcnow,
)
from marketplace_ledger.services.state_machine import BalanceState, BalanceStateMachine

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_TO_UPDATE_BALANCE = 2


class BalanceStateError(Exception):
    """Raised when a balance that is no longer unpaid would be changed."""

    def __init__(self, balance_id: UUID, state: str):
        self.balance_id = balance_id
        self.state = state
        super().__init__(f"Balance {balance_id} is {state}; only unpaid balances can change")


class BalanceCouldNotBeFoundOrCreated(Exception):
    """Raised when no unpaid balance exists and none could be created."""

    def __init__(self, balance_transaction_id: UUID):
        self.balance_transaction_id = balance_transaction_id
        super().__init__(f"No balance found or created for balance transaction {balance_transaction_id}")


@dataclass(frozen=True)
class BalanceAmounts:
    """Gross and net cents of one side (issued or holding) of a transaction."""

    currency: str
    gross_cents: int
    net_cents: int

    @classmethod
    def create_issued_amount_for_seller(cls, flow_of_funds: FlowOfFunds, issued_net_cents: int) -> BalanceAmounts:
        return cls(
            currency=flow_of_funds.issued_amount.currency,
            gross_cents=flow_of_funds.issued_amount.cents,
            net_cents=issued_net_cents,
        )

    @classmethod
    def create_holding_amount_for_seller(cls, flow_of_funds: FlowOfFunds, issued_net_cents: int) -> BalanceAmounts:
        """Amounts in the seller's merchant account currency.

        Managed accounts report what actually moved in their own currency;
        everything else holds the issued currency.
        """
        gross = flow_of_funds.merchant_account_gross_amount
        net = flow_of_funds.merchant_account_net_amount
        if gross is not None and net is not None:
            return cls(currency=gross.currency, gross_cents=gross.cents, net_cents=net.cents)
        return cls.create_issued_amount_for_seller(flow_of_funds, issued_net_cents)

    @classmethod
    def create_issued_amount_for_affiliate(cls, flow_of_funds: FlowOfFunds, affiliate_cents: int) -> BalanceAmounts:
        return cls(
            currency=flow_of_funds.platform_amount.currency,
            gross_cents=affiliate_cents,
            net_cents=affiliate_cents,
        )

    @classmethod
    def create_holding_amount_for_affiliate(cls, flow_of_funds: FlowOfFunds, affiliate_cents: int) -> BalanceAmounts:
        return cls.create_issued_amount_for_affiliate(flow_of_funds, affiliate_cents)

    def negated(self) -> BalanceAmounts:
        return BalanceAmounts(self.currency, -self.gross_cents, -self.net_cents)


class BalanceService:
    """Posts balance transactions and manages the payout state of balances."""

    def __init__(self, session: Session, emitter: EventEmitter | None = None, max_attempts: int = MAX_ATTEMPTS_TO_UPDATE_BALANCE):
        self.session = session
        self.emitter = emitter or EventEmitter()
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        user: User,
        merchant_account: MerchantAccount,
        *,
        purchase: Purchase | None = None,
        refund: Refund | None = None,
        dispute: Dispute | None = None,
        credit: Credit | None = None,
        issued_amount: BalanceAmounts,
        holding_amount: BalanceAmounts,
        update_user_balance: bool = True,
    ) -> BalanceTransaction:
        """Write a balance transaction and apply it to the user's balance.

        Raises:
            ValueError: not exactly one source object, or the holding
                currency differs from the merchant account's currency
        """
        sources = [s for s in (purchase, refund, dispute, credit) if s is not None]
        if len(sources) != 1:
            raise ValueError("A balance transaction needs exactly one of purchase, refund, dispute or credit")
        if holding_amount.currency != merchant_account.currency:
            raise ValueError(
                f"Holding currency {holding_amount.currency} does not match "
                f"merchant account currency {merchant_account.currency}"
            )

        transaction = BalanceTransaction(
            user=user,
            merchant_account=merchant_account,
            purchase=purchase,
            refund=refund,
            dispute=dispute,
            credit=credit,
            issued_amount_currency=issued_amount.currency,
            issued_amount_gross_cents=issued_amount.gross_cents,
            issued_amount_net_cents=issued_amount.net_cents,
            holding_amount_currency=holding_amount.currency,
            holding_amount_gross_cents=holding_amount.gross_cents,
            holding_amount_net_cents=holding_amount.net_cents,
        )
        self.session.add(transaction)
        self.session.flush()

        if update_user_balance:
            self.update_balance(transaction)
        return transaction

    def update_balance(self, transaction: BalanceTransaction) -> Balance:
        """Apply a transaction to an unpaid balance, retrying once on a state race."""
        attempts = 0
        while True:
            attempts += 1
            try:
                balance = self.find_or_create_balance(transaction)
                return self.apply(transaction, balance)
            except BalanceStateError as e:
                if attempts >= self.max_attempts:
                    raise
                logger.info(
                    "Balance %s left the unpaid state while posting %s, retrying",
                    e.balance_id,
                    transaction.balance_transaction_id,
                )

    def apply(self, transaction: BalanceTransaction, balance: Balance) -> Balance:
        """Add a transaction's net amounts to a specific balance under a row lock."""
        locked = self.session.scalars(
            select(Balance)
            .where(Balance.balance_id == balance.balance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one()
        if not BalanceStateMachine.can_change_amounts(locked.state):
            raise BalanceStateError(locked.balance_id, locked.state)

        locked.amount_cents += transaction.issued_amount_net_cents
        locked.holding_amount_cents += transaction.holding_amount_net_cents
        transaction.balance = locked
        self.session.flush()

        self.emitter.emit(
            BalanceTransactionPosted(
                metadata=EventMetadata.create(source_service="balances"),
                balance_transaction_id=transaction.balance_transaction_id,
                balance_id=locked.balance_id,
                user_id=transaction.user_id,
                issued_currency=transaction.issued_amount_currency,
                issued_net_cents=transaction.issued_amount_net_cents,
                holding_currency=transaction.holding_amount_currency,
                holding_net_cents=transaction.holding_amount_net_cents,
            )
        )
        return locked

    def find_or_create_balance(self, transaction: BalanceTransaction) -> Balance:
        """Pick the unpaid balance a transaction belongs to.

        - purchase: the balance dated on the day it succeeded
        - refund, dispute: the balance of the purchase's day, else the
          oldest unpaid one
        - credit: the oldest unpaid balance
        A new balance dated on the source's own date is created otherwise.
        """
        candidates = (
            select(Balance)
            .where(
                Balance.user_id == transaction.user_id,
                Balance.merchant_account_id == transaction.merchant_account_id,
                Balance.currency == transaction.issued_amount_currency,
                Balance.holding_currency == transaction.holding_amount_currency,
                Balance.state == BalanceState.UNPAID.value,
            )
            .order_by(Balance.date, Balance.created_at)
        )

        balance: Balance | None = None
        if transaction.purchase is not None:
            succeeded_on = transaction.purchase.succeeded_on
            if succeeded_on is not None:
                balance = self._first(candidates.where(Balance.date == succeeded_on))
        elif transaction.refund is not None or transaction.dispute is not None:
            source = transaction.refund or transaction.dispute
            succeeded_on = source.purchase.succeeded_on
            if succeeded_on is not None:
                balance = self._first(candidates.where(Balance.date == succeeded_on))
            if balance is None:
                balance = self._first(candidates)
        else:
            balance = self._first(candidates)

        if balance is not None:
            return balance

        balance = Balance(
            user_id=transaction.user_id,
            merchant_account_id=transaction.merchant_account_id,
            date=self._occurrence_date(transaction),
            currency=transaction.issued_amount_currency,
            holding_currency=transaction.holding_amount_currency,
            amount_cents=0,
            holding_amount_cents=0,
            state=BalanceState.UNPAID.value,
        )
        self.session.add(balance)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise BalanceCouldNotBeFoundOrCreated(transaction.balance_transaction_id) from e
        logger.debug("Created balance %s for user %s on %s", balance.balance_id, balance.user_id, balance.date)
        return balance

    def _first(self, stmt) -> Balance | None:
        return self.session.scalars(stmt.limit(1)).first()

    @staticmethod
    def _occurrence_date(transaction: BalanceTransaction) -> date:
        if transaction.purchase is not None and transaction.purchase.succeeded_at is not None:
            return transaction.purchase.succeeded_at.date()
        if transaction.refund is not None and transaction.refund.created_at is not None:
            return transaction.refund.created_at.date()
        if transaction.dispute is not None and transaction.dispute.formalized_at is not None:
            return transaction.dispute.formalized_at.date()
        if transaction.credit is not None and transaction.credit.created_at is not None:
            return transaction.credit.created_at.date()
        return utcnow().date()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def unpaid_balances(self, user_id: UUID, merchant_account_id: UUID | None = None) -> list[Balance]:
        stmt = select(Balance).where(
            Balance.user_id == user_id, Balance.state == BalanceState.UNPAID.value
        )
        if merchant_account_id is not None:
            stmt = stmt.where(Balance.merchant_account_id == merchant_account_id)
        return list(self.session.scalars(stmt.order_by(Balance.date)))

    def unpaid_balance_cents(self, user_id: UUID, merchant_account_id: UUID | None = None) -> int:
        """Sum of the user's unpaid balances in issued-currency cents."""
        stmt = select(func.coalesce(func.sum(Balance.amount_cents), 0)).where(
            Balance.user_id == user_id, Balance.state == BalanceState.UNPAID.value
        )
        if merchant_account_id is not None:
            stmt = stmt.where(Balance.merchant_account_id == merchant_account_id)
        return int(self.session.scalar(stmt))

    def unpaid_balance_holding_cents(self, user_id: UUID, merchant_account_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(Balance.holding_amount_cents), 0)).where(
            Balance.user_id == user_id,
            Balance.merchant_account_id == merchant_account_id,
            Balance.state == BalanceState.UNPAID.value,
        )
        return int(self.session.scalar(stmt))

    # ------------------------------------------------------------------
    # Payout lifecycle
    # ------------------------------------------------------------------

    def mark_processing(self, balance: Balance) -> Balance:
        return self._transition(balance, BalanceState.PROCESSING)

    def mark_paid(self, balance: Balance) -> Balance:
        return self._transition(balance, BalanceState.PAID)

    def mark_unpaid(self, balance: Balance) -> Balance:
        """Return a balance to unpaid after a failed payout."""
        return self._transition(balance, BalanceState.UNPAID)

    def mark_forfeited(self, balance: Balance) -> Balance:
        if balance.amount_cents != 0 or balance.holding_amount_cents != 0:
            raise BalanceStateError(balance.balance_id, f"{balance.state} with a non-zero amount")
        return self._transition(balance, BalanceState.FORFEITED)

    def _transition(self, balance: Balance, to_state: BalanceState) -> Balance:
        previous = BalanceStateMachine.transition(balance, to_state)
        self.session.flush()
        self.emitter.emit(
            BalanceStateChanged(
                metadata=EventMetadata.create(source_service="balances"),
                balance_id=balance.balance_id,
                user_id=balance.user_id,
                previous_state=str(previous),
                new_state=balance.state,
            )
        )
        return balance
