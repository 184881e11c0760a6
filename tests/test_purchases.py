"""Tests for purchase processing and the balances it credits.

Verifies:
- fees, affiliate credit and taxes on the stored purchase
- seller and affiliate balance increments per merchant account topology
- failure paths record a failed purchase and emit PurchaseFailed
"""

from decimal import Decimal

import pytest

from marketplace_ledger.events import PurchaseFailed, PurchaseSucceeded
from marketplace_ledger.models import Affiliate, ProductAffiliate
from marketplace_ledger.services import PurchaseError, PurchaseErrorCode, PurchaseRequest


class TestPurchaseOnPlatformAccount:
    """Test sales charged on the platform's own merchant account."""

    def test_fee_and_seller_balance(self, ledger, product, seller, platform_stripe_account, recorder):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, email="buyer@example.com"))

        assert purchase.purchase_state == "successful"
        assert purchase.price_cents == 100
        assert purchase.total_transaction_cents == 100
        assert purchase.fee_cents == 93
        assert purchase.merchant_account is platform_stripe_account
        assert purchase.processor_transaction_id.startswith("ch_")
        assert purchase.processor_fee_cents == 33
        assert purchase.flow_of_funds.issued_amount.cents == 100
        assert purchase.purchase_success_balance is not None
        assert ledger.unpaid_balance_cents(seller.user_id) == 7

        succeeded = recorder.of_type(PurchaseSucceeded)
        assert len(succeeded) == 1
        assert succeeded[0].fee_cents == 93

    def test_affiliate_credit(self, ledger, product, seller, affiliate, affiliate_user):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        assert purchase.affiliate_credit_cents == 1
        credit = purchase.affiliate_credit
        assert credit.amount_cents == 1
        assert credit.basis_points == 1500
        assert credit.fee_cents == 14
        assert credit.success_balance_id is not None
        assert ledger.unpaid_balance_cents(affiliate_user.user_id) == 1
        assert ledger.unpaid_balance_cents(seller.user_id) == 6

    def test_product_specific_affiliate_rate(
        self, session, ledger, make_product, product, seller, affiliate, affiliate_user
    ):
        pricier = make_product(seller, name="Course", price_cents=200)
        session.add(ProductAffiliate(affiliate=affiliate, product_id=pricier.product_id, basis_points=2000))
        session.flush()

        ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))
        second = ledger.process_purchase(PurchaseRequest(product=pricier, affiliate=affiliate))

        assert second.fee_cents == 106
        assert second.affiliate_credit_cents == 18
        assert ledger.unpaid_balance_cents(affiliate_user.user_id) == 19
        assert ledger.unpaid_balance_cents(seller.user_id) == 82

    def test_balance_conservation(self, ledger, make_product, seller, affiliate, affiliate_user):
        """Seller + affiliate + platform fee add up to the price."""
        product = make_product(seller, price_cents=2500)

        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        seller_cents = ledger.unpaid_balance_cents(seller.user_id)
        affiliate_cents = ledger.unpaid_balance_cents(affiliate_user.user_id)
        assert seller_cents + affiliate_cents + purchase.fee_cents == purchase.price_cents

    def test_quantity_and_custom_price(self, ledger, product):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, quantity=3, custom_price_cents=150))

        assert purchase.displayed_price_cents == 450
        assert purchase.price_cents == 450

    def test_foreign_currency_price(self, ledger, make_product, seller):
        product = make_product(seller, price_cents=1000, price_currency="eur")

        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        assert purchase.displayed_price_cents == 1000
        assert purchase.displayed_price_currency == "eur"
        assert purchase.rate_converted_to_usd == Decimal("0.92")
        assert purchase.price_cents == 1087

    def test_shipping(self, ledger, make_product, seller):
        product = make_product(seller, price_cents=1000, is_physical=True)

        purchase = ledger.process_purchase(PurchaseRequest(product=product, shipping_cents=500))

        assert purchase.shipping_cents == 500
        assert purchase.price_cents == 1500
        assert purchase.total_transaction_cents == 1500
        assert purchase.fee_cents == 274

    def test_discover_fee(self, ledger, make_product, seller):
        product = make_product(seller, price_cents=1000, recommendable=True)

        purchase = ledger.process_purchase(PurchaseRequest(product=product, was_product_recommended=True))

        assert purchase.was_discover_fee_charged is True
        assert purchase.fee_cents == 300

    def test_paypal_platform_account(self, ledger, product, seller, platform_paypal_account):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, charge_processor_id="paypal"))

        assert purchase.merchant_account is platform_paypal_account
        assert purchase.processor_fee_cents == 52
        assert purchase.flow_of_funds.issued_amount.cents == 100
        assert ledger.unpaid_balance_cents(seller.user_id) == 7


class TestPurchaseTaxes:
    """Test tax collection on purchases."""

    def test_platform_collected_vat(self, ledger, product, german_vat):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, country="DE"))

        assert purchase.platform_tax_cents == 19
        assert purchase.tax_cents == 0
        assert purchase.price_cents == 100
        assert purchase.total_transaction_cents == 119
        assert purchase.fee_cents == 93
        assert purchase.zip_tax_rate is german_vat

    def test_seller_responsible_tax(self, ledger, product, seller, make_tax_rate):
        make_tax_rate("DE", "0.19", user_id=seller.user_id, is_seller_responsible=True)

        purchase = ledger.process_purchase(PurchaseRequest(product=product, country="DE"))

        assert purchase.tax_cents == 19
        assert purchase.platform_tax_cents == 0
        assert purchase.price_cents == 119
        assert purchase.total_transaction_cents == 119

    def test_business_vat_id(self, ledger, product, german_vat):
        purchase = ledger.process_purchase(
            PurchaseRequest(product=product, country="DE", business_vat_id="DE123456789")
        )

        assert purchase.platform_tax_cents == 0
        assert purchase.total_transaction_cents == 100


class TestPurchaseOnSellerAccounts:
    """Test sales charged on merchant accounts of the seller."""

    def test_connect_account(
        self, session, ledger, product, seller, connect_account, affiliate, affiliate_user, platform_stripe_account
    ):
        affiliate.basis_points = 1000
        session.flush()

        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        assert purchase.merchant_account is connect_account
        assert purchase.charged_using_platform_merchant_account is False
        assert purchase.fee_cents == 60
        assert purchase.affiliate_credit_cents == 4
        assert purchase.flow_of_funds.platform_amount.cents == 64
        # The seller is paid by the processor directly
        assert ledger.unpaid_balance_cents(seller.user_id) == 0
        assert ledger.unpaid_balance_cents(affiliate_user.user_id, platform_stripe_account.merchant_account_id) == 4

    def test_managed_account_holding_currency(self, ledger, product, seller, make_merchant_account):
        account = make_merchant_account(seller, holder_of_funds="stripe", currency="eur", country="DE")

        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        assert purchase.merchant_account is account
        assert purchase.fee_cents == 93
        [balance] = ledger.balances.unpaid_balances(seller.user_id)
        assert balance.merchant_account_id == account.merchant_account_id
        assert balance.amount_cents == 7
        assert balance.holding_currency == "eur"
        assert balance.holding_amount_cents == 6

    def test_inactive_account_falls_back_to_platform(
        self, ledger, product, seller, make_merchant_account, platform_stripe_account
    ):
        make_merchant_account(seller, holder_of_funds="seller", is_connect_account=True, active=False)

        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        assert purchase.merchant_account is platform_stripe_account

    def test_brazilian_connect_account_with_affiliate(self, ledger, product, seller, make_merchant_account, affiliate):
        make_merchant_account(seller, holder_of_funds="seller", is_connect_account=True, country="BR")

        with pytest.raises(PurchaseError) as exc_info:
            ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        assert exc_info.value.error_code == PurchaseErrorCode.BRAZILIAN_MERCHANT_ACCOUNT_WITH_AFFILIATE

    def test_brazilian_connect_account_pays_no_fee(self, ledger, product, seller, make_merchant_account):
        make_merchant_account(seller, holder_of_funds="seller", is_connect_account=True, country="BR")

        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        assert purchase.fee_cents == 0


class TestFreePurchases:
    """Test purchases that charge nothing."""

    def test_free_product(self, ledger, make_product, seller):
        product = make_product(seller, price_cents=0)

        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        assert purchase.purchase_state == "successful"
        assert purchase.fee_cents == 0
        assert purchase.processor_transaction_id is None
        assert ledger.balances.unpaid_balances(seller.user_id) == []

    def test_free_trial(self, ledger, product, seller, recorder):
        purchase = ledger.process_purchase(PurchaseRequest(product=product, is_free_trial_purchase=True))

        assert purchase.purchase_state == "not_charged"
        assert purchase.processor_transaction_id is None
        assert ledger.balances.unpaid_balances(seller.user_id) == []
        assert recorder.of_type(PurchaseSucceeded) == []


class TestPurchaseFailures:
    """Test rejected and declined purchases."""

    def test_invalid_quantity(self, ledger, product):
        with pytest.raises(PurchaseError) as exc_info:
            ledger.process_purchase(PurchaseRequest(product=product, quantity=0))

        assert exc_info.value.error_code == PurchaseErrorCode.INVALID_QUANTITY
        assert exc_info.value.purchase is None

    def test_custom_price_below_minimum(self, ledger, product):
        with pytest.raises(PurchaseError) as exc_info:
            ledger.process_purchase(PurchaseRequest(product=product, custom_price_cents=99))

        assert exc_info.value.error_code == PurchaseErrorCode.PRICE_TOO_LOW

    def test_net_negative_seller_revenue(self, ledger, make_product, seller, recorder):
        """A 50c sale does not cover the fixed fees."""
        product = make_product(seller, price_cents=50)

        with pytest.raises(PurchaseError) as exc_info:
            ledger.process_purchase(PurchaseRequest(product=product))

        assert exc_info.value.error_code == PurchaseErrorCode.NET_NEGATIVE_SELLER_REVENUE
        assert exc_info.value.purchase.purchase_state == "failed"
        assert recorder.of_type(PurchaseFailed)[0].error_code == "net_negative_seller_revenue"

    def test_card_declined(self, ledger, stripe, product, seller, recorder):
        stripe.decline_next_charge("card_declined")

        with pytest.raises(PurchaseError) as exc_info:
            ledger.process_purchase(PurchaseRequest(product=product))

        purchase = exc_info.value.purchase
        assert exc_info.value.error_code == "card_declined"
        assert purchase.purchase_state == "failed"
        assert purchase.error_code == "card_declined"
        assert ledger.balances.unpaid_balances(seller.user_id) == []
        assert len(recorder.of_type(PurchaseFailed)) == 1

    def test_processor_unavailable(self, ledger, stripe, paypal, product):
        stripe.unavailable = True
        paypal.unavailable = True

        with pytest.raises(PurchaseError) as stripe_error:
            ledger.process_purchase(PurchaseRequest(product=product))
        with pytest.raises(PurchaseError) as paypal_error:
            ledger.process_purchase(PurchaseRequest(product=product, charge_processor_id="paypal"))

        assert stripe_error.value.error_code == PurchaseErrorCode.STRIPE_UNAVAILABLE
        assert paypal_error.value.error_code == PurchaseErrorCode.PAYPAL_UNAVAILABLE

    def test_collaborator_is_an_affiliate(self, session, ledger, product, seller, make_user):
        collaborator = make_user(email="collab@example.com")
        affiliate = Affiliate(
            seller_id=seller.user_id,
            affiliate_user_id=collaborator.user_id,
            basis_points=5000,
            is_collaborator=True,
        )
        session.add(affiliate)
        session.flush()

        purchase = ledger.process_purchase(PurchaseRequest(product=product, affiliate=affiliate))

        assert purchase.affiliate_credit_cents == 3
