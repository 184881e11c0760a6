"""Tests for refunds and their effect on balances.

Verifies:
- full and partial refunds decrement seller and affiliate balances
- the processor fee of a refunded sale is retained from the seller
- tax-only refunds and the credits that settle them with the seller
- refunds are idempotent and report processor failures
"""

import pytest

from marketplace_ledger.events import CreditIssued, RefundIssued, TaxRefundIssued
from marketplace_ledger.services import PurchaseRequest
from marketplace_ledger.services.refund_service import (
    ERROR_AMOUNT_TOO_HIGH,
    ERROR_DISCONNECTED_ACCOUNT,
    ERROR_INSUFFICIENT_FUNDS,
    ERROR_REFUNDS_DISABLED,
    ERROR_UNAVAILABLE,
)


@pytest.fixture
def purchase(ledger, product):
    """A successful $1 sale on the platform's Stripe account."""
    return ledger.process_purchase(PurchaseRequest(product=product))


class TestFullRefund:
    """Test refunding everything."""

    def test_full_refund(self, ledger, purchase, seller, recorder):
        result = ledger.refund(purchase, None)

        assert result.success is True
        assert result.errors == []
        refund = result.refund
        assert refund.total_transaction_cents == 100
        assert refund.amount_cents == 100
        assert refund.fee_cents == 93
        assert refund.retained_fee_cents == 33
        assert refund.processor_refund_id.startswith("re_")
        assert purchase.is_refunded is True
        assert purchase.is_partially_refunded is False
        assert purchase.purchase_refund_balance is not None

        # 7c sale taken back, 33c processor fee retained
        assert ledger.unpaid_balance_cents(seller.user_id) == -33

        [issued] = recorder.of_type(RefundIssued)
        assert issued.is_partial is False
        assert issued.amount_cents == 100
        assert any(e.reason == "refund_fee_retention" for e in recorder.of_type(CreditIssued))

    def test_full_refund_with_affiliate(self, ledger, product, seller, affiliate, affiliate_user):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        ledger.refund(purchase, None)

        assert ledger.unpaid_balance_cents(affiliate_user.user_id) == 0
        assert ledger.unpaid_balance_cents(seller.user_id) == -33
        assert purchase.affiliate_credit.refund_balance_id is not None
        assert purchase.affiliate_partial_refunds == []

    def test_amount_equal_to_price_is_a_full_refund(self, ledger, purchase):
        result = ledger.refund(purchase, None, "1.00")

        assert result.refund.fee_cents == 93
        assert purchase.is_refunded is True

    def test_refund_is_idempotent(self, ledger, purchase, seller):
        ledger.refund(purchase, None)

        again = ledger.refund(purchase, None)

        assert again.success is False
        assert again.errors == []
        assert len(purchase.refunds) == 1
        assert ledger.unpaid_balance_cents(seller.user_id) == -33

    def test_refund_for_fraud_waives_fee(self, ledger, purchase, seller, team_member):
        result = ledger.refund_for_fraud(purchase, team_member.user_id)

        assert result.refund.is_for_fraud is True
        assert result.refund.retained_fee_cents is None
        assert purchase.is_refund_chargeback_fee_waived is True
        assert ledger.unpaid_balance_cents(seller.user_id) == 0


class TestPartialRefund:
    """Test refunding part of a purchase."""

    def test_partial_refund(self, ledger, purchase, seller, recorder):
        result = ledger.refund(purchase, None, "0.50")

        refund = result.refund
        assert refund.amount_cents == 50
        assert refund.fee_cents == 46
        assert refund.retained_fee_cents == 17
        assert purchase.is_partially_refunded is True
        assert purchase.is_refunded is False
        assert purchase.amount_refundable_cents == 50
        # 7 - (50 - 46) - 17
        assert ledger.unpaid_balance_cents(seller.user_id) == -14
        assert recorder.of_type(RefundIssued)[0].is_partial is True

    def test_refund_the_rest(self, ledger, purchase, seller):
        ledger.refund(purchase, None, "0.50")

        result = ledger.refund(purchase, None)

        assert result.refund.amount_cents == 50
        assert result.refund.fee_cents == 47
        assert purchase.is_refunded is True
        assert purchase.fee_refunded_cents == 93
        assert ledger.unpaid_balance_cents(seller.user_id) == -34

    def test_amount_too_high(self, ledger, purchase, seller):
        result = ledger.refund(purchase, None, "2.00")

        assert result.success is False
        assert result.errors == [ERROR_AMOUNT_TOO_HIGH]
        assert purchase.refunds == []
        assert ledger.unpaid_balance_cents(seller.user_id) == 7

    def test_partial_refund_with_affiliate(self, ledger, make_product, seller, affiliate, affiliate_user):
        product = make_product(seller, price_cents=1000)
        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))
        assert purchase.affiliate_credit_cents == 118

        ledger.refund(purchase, None, "5.00")

        [partial] = purchase.affiliate_partial_refunds
        assert partial.total_credit_cents == 118
        assert partial.amount_cents == 60
        assert partial.fee_cents == 15
        assert ledger.unpaid_balance_cents(affiliate_user.user_id) == 58

    def test_record_processor_side_partial_refund(self, ledger, purchase, seller):
        result = ledger.refunds.refund_partial_purchase(purchase, 50, None, processor_refund_id="re_dashboard")

        assert result.refund.processor_refund_id == "re_dashboard"
        assert result.refund.fee_cents == 46
        assert purchase.is_partially_refunded is True
        # The processor already settled the refund; only the 17c fee share is retained
        assert purchase.purchase_refund_balance is None
        assert ledger.unpaid_balance_cents(seller.user_id) == -10


class TestRefundFailures:
    """Test refunds that cannot be made."""

    def test_refunds_disabled(self, ledger, purchase, seller, team_member):
        seller.refunds_disabled = True

        blocked = ledger.refund(purchase, None)
        allowed = ledger.refund(purchase, team_member.user_id)

        assert blocked.errors == [ERROR_REFUNDS_DISABLED]
        assert allowed.success is True

    def test_disconnected_account(self, ledger, product, connect_account):
        purchase = ledger.process_purchase(PurchaseRequest(product=product))
        connect_account.active = False

        result = ledger.refund(purchase, None)

        assert result.errors == [ERROR_DISCONNECTED_ACCOUNT.format(processor="Stripe")]
        assert purchase.is_refunded is False

    def test_insufficient_funds(self, ledger, paypal, product):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, charge_processor_id="paypal"))
        paypal.insufficient_funds = True

        result = ledger.refund(purchase, None)

        assert result.errors == [ERROR_INSUFFICIENT_FUNDS]
        assert purchase.refunds == []

    def test_processor_unavailable(self, ledger, stripe, purchase, recorder):
        stripe.unavailable = True

        result = ledger.refund(purchase, None)

        assert result.errors == [ERROR_UNAVAILABLE]
        assert recorder.of_type(RefundIssued) == []

    def test_unpaid_purchase_is_skipped(self, ledger, product):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, is_free_trial_purchase=True))

        result = ledger.refund(purchase, None)

        assert result.success is False
        assert result.errors == []


class TestTaxRefunds:
    """Test refunds of platform-collected tax."""

    @pytest.fixture
    def taxed_purchase(self, ledger, product, german_vat):
        return ledger.process_purchase(PurchaseRequest(product=product, country="DE"))

    def test_refund_taxes_only(self, ledger, taxed_purchase, seller, recorder):
        result = ledger.refund_taxes(taxed_purchase, None, note="Late VAT id", business_vat_id="DE123456789")

        refund = result.refund
        assert refund.total_transaction_cents == 19
        assert refund.platform_tax_cents == 19
        assert refund.amount_cents == 0
        assert refund.business_vat_id == "DE123456789"
        assert taxed_purchase.vat_already_refunded is True
        assert taxed_purchase.is_partially_refunded is False
        # Tax never reached the seller's balance
        assert ledger.unpaid_balance_cents(seller.user_id) == 7
        assert recorder.of_type(TaxRefundIssued)[0].platform_tax_cents == 19

    def test_taxes_refunded_once(self, ledger, taxed_purchase):
        ledger.refund_taxes(taxed_purchase, None)

        assert ledger.refund_taxes(taxed_purchase, None).success is False

    def test_full_refund_after_tax_refund(self, ledger, taxed_purchase, seller):
        ledger.refund_taxes(taxed_purchase, None)

        result = ledger.refund(taxed_purchase, None)

        assert result.refund.amount_cents == 100
        assert result.refund.platform_tax_cents == 0
        assert taxed_purchase.is_refunded is True
        assert ledger.unpaid_balance_cents(seller.user_id) == -33

    def test_partial_refund_includes_tax(self, ledger, taxed_purchase):
        result = ledger.refund(taxed_purchase, None, "0.50")

        assert result.refund.total_transaction_cents == 59
        assert result.refund.platform_tax_cents == 9
        assert result.refund.amount_cents == 50

    def test_connect_account_tax_refund_credits_seller(
        self, ledger, product, seller, connect_account, german_vat
    ):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, country="DE"))
        assert purchase.fee_cents == 60

        ledger.refund_taxes(purchase, None)
        # The connected account paid 7c of the 19c tax refund
        assert ledger.unpaid_balance_cents(seller.user_id) == 7

        ledger.refund(purchase, None)
        # The rest of the application fee is evened out
        assert ledger.unpaid_balance_cents(seller.user_id) == 1


class TestManagedAccountRefunds:
    """Test refunds on seller accounts managed by the platform."""

    def test_fee_debited_from_us_account(self, ledger, stripe, product, seller, managed_account):
        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        ledger.refund(purchase, None)

        assert stripe.fee_debits == [(str(managed_account.merchant_account_id), 33)]
        assert ledger.unpaid_balance_cents(seller.user_id) == -33
        assert ledger.balances.unpaid_balance_holding_cents(seller.user_id, managed_account.merchant_account_id) == -33

    def test_holding_currency_account(self, ledger, product, seller, make_merchant_account):
        account = make_merchant_account(seller, holder_of_funds="stripe", currency="eur", country="DE")
        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        ledger.refund(purchase, None)

        assert ledger.unpaid_balance_cents(seller.user_id) == -33
        assert ledger.balances.unpaid_balance_holding_cents(seller.user_id, account.merchant_account_id) == -30

    def test_partial_refund_after_tax_refund_reverses_rest_of_transfer(
        self, ledger, stripe, make_product, seller, managed_account, german_vat, recorder
    ):
        product = make_product(seller, price_cents=1000)
        purchase = ledger.process_purchase(PurchaseRequest(product=product, country="DE"))
        # 1190c charged, 399c kept by the platform (209c fee and 190c VAT)
        transfer = stripe._transfers[stripe.transfer_for_charge(purchase.processor_transaction_id)]
        assert transfer.amount_cents == 791
        ledger.refund_taxes(purchase, None)

        result = ledger.refund(purchase, None, "5.00")

        assert result.refund.total_transaction_cents == 500
        assert result.refund.fee_cents == 104
        # The refund reversed 332c of the transfer in proportion to the charge;
        # the seller's balance was debited 396c, so 64c more are reversed
        assert [r.amount_cents for r in transfer.reversals] == [332, 64]
        [credit] = [c for c in recorder.of_type(CreditIssued) if c.reason == "transfer_reversal"]
        assert credit.user_id == seller.user_id
        assert credit.amount_cents == -64
