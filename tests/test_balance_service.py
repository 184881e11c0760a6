"""Tests for balance posting and the payout lifecycle."""

import pytest

from marketplace_ledger.events import BalanceStateChanged, BalanceTransactionPosted
from marketplace_ledger.models import Balance, BalanceTransaction
from marketplace_ledger.services import (
    BalanceAmounts,
    BalanceService,
    BalanceStateError,
    InvalidTransitionError,
    PurchaseRequest,
)


@pytest.fixture
def seller_balance(ledger, seller) -> Balance:
    ledger.credit(seller, 100)
    [balance] = ledger.balances.unpaid_balances(seller.user_id)
    return balance


class TestPosting:
    """Test writing balance transactions."""

    def test_purchase_lands_on_its_day(self, ledger, product, seller, recorder):
        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        balance = purchase.purchase_success_balance
        assert balance.date == purchase.succeeded_on
        assert balance.amount_cents == 7
        assert balance.holding_amount_cents == 7
        assert recorder.of_type(BalanceTransactionPosted)[-1].issued_net_cents == 7

    def test_sales_share_a_balance(self, ledger, product, seller):
        first = ledger.process_purchase(PurchaseRequest(product=product))
        second = ledger.process_purchase(PurchaseRequest(product=product))

        assert first.purchase_success_balance_id == second.purchase_success_balance_id
        assert ledger.unpaid_balance_cents(seller.user_id) == 14

    def test_transaction_needs_one_source(self, ledger, seller, platform_stripe_account):
        amounts = BalanceAmounts("usd", 10, 10)

        with pytest.raises(ValueError):
            ledger.balances.create_transaction(
                seller, platform_stripe_account, issued_amount=amounts, holding_amount=amounts
            )

    def test_holding_currency_must_match_account(self, ledger, product, seller, make_merchant_account):
        account = make_merchant_account(seller, holder_of_funds="stripe", currency="eur", country="DE")
        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        with pytest.raises(ValueError, match="Holding currency"):
            ledger.balances.create_transaction(
                seller,
                account,
                purchase=purchase,
                issued_amount=BalanceAmounts("usd", 1, 1),
                holding_amount=BalanceAmounts("usd", 1, 1),
            )

    def test_new_balance_when_paying_out(self, ledger, seller, seller_balance):
        ledger.balances.mark_processing(seller_balance)

        ledger.credit(seller, 40)

        [unpaid] = ledger.balances.unpaid_balances(seller.user_id)
        assert unpaid.balance_id != seller_balance.balance_id
        assert unpaid.amount_cents == 40
        assert seller_balance.amount_cents == 100

    def test_retries_when_balance_leaves_unpaid(self, ledger, session, seller, seller_balance, monkeypatch):
        """A balance picked up by a payout between lookup and lock is skipped."""
        seller_balance.state = "processing"
        session.flush()
        balances: BalanceService = ledger.balances
        real_find = balances.find_or_create_balance
        calls = []

        def find_stale_first(transaction: BalanceTransaction) -> Balance:
            calls.append(transaction)
            if len(calls) == 1:
                return seller_balance
            return real_find(transaction)

        monkeypatch.setattr(balances, "find_or_create_balance", find_stale_first)

        credit = ledger.credit(seller, 40)

        assert len(calls) == 2
        assert credit.balance.balance_id != seller_balance.balance_id
        assert credit.balance.amount_cents == 40

    def test_gives_up_after_max_attempts(self, session, seller, seller_balance, monkeypatch, ledger):
        seller_balance.state = "processing"
        session.flush()
        monkeypatch.setattr(ledger.balances, "find_or_create_balance", lambda transaction: seller_balance)

        with pytest.raises(BalanceStateError) as exc_info:
            ledger.credit(seller, 40)

        assert exc_info.value.balance_id == seller_balance.balance_id


class TestPayoutLifecycle:
    """Test balance state changes."""

    def test_paid(self, ledger, seller, seller_balance, recorder):
        ledger.balances.mark_processing(seller_balance)
        ledger.balances.mark_paid(seller_balance)

        assert seller_balance.state == "paid"
        assert ledger.unpaid_balance_cents(seller.user_id) == 0
        states = [(e.previous_state, e.new_state) for e in recorder.of_type(BalanceStateChanged)]
        assert states == [("unpaid", "processing"), ("processing", "paid")]

    def test_failed_payout(self, ledger, seller, seller_balance):
        ledger.balances.mark_processing(seller_balance)

        ledger.balances.mark_unpaid(seller_balance)

        assert ledger.unpaid_balance_cents(seller.user_id) == 100

    def test_paid_cannot_be_reopened(self, ledger, seller_balance):
        ledger.balances.mark_processing(seller_balance)
        ledger.balances.mark_paid(seller_balance)

        with pytest.raises(InvalidTransitionError):
            ledger.balances.mark_unpaid(seller_balance)

    def test_forfeit_requires_zero_amount(self, ledger, seller_balance):
        with pytest.raises(BalanceStateError):
            ledger.balances.mark_forfeited(seller_balance)

        assert seller_balance.state == "unpaid"


class TestQueries:
    """Test unpaid balance sums."""

    def test_per_merchant_account(self, ledger, product, seller, platform_stripe_account, managed_account):
        ledger.process_purchase(PurchaseRequest(product=product))
        ledger.credit(seller, 50)

        assert ledger.unpaid_balance_cents(seller.user_id) == 57
        assert ledger.unpaid_balance_cents(seller.user_id, managed_account.merchant_account_id) == 7
        assert ledger.unpaid_balance_cents(seller.user_id, platform_stripe_account.merchant_account_id) == 50

    def test_no_balances(self, ledger, seller):
        assert ledger.unpaid_balance_cents(seller.user_id) == 0
        assert ledger.balances.unpaid_balances(seller.user_id) == []
