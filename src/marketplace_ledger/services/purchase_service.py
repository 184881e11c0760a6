"""Purchase processing: pricing, fees, taxes, charging and balances.

Processing order:
1. Price and rate (displayed price converted to USD)
2. Fees and affiliate credit on the price
3. Taxes; seller-responsible tax is added to the price, platform tax
   only to the total charged
4. Shipping, added to both price and total
5. Fees again on the final price, then the seller revenue check
6. Charge, then balances
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.calculators import AffiliateSplit, FeeCalculator, FeeContext, affiliate_split
from marketplace_ledger.calculators.tax_calculator import SalesTaxCalculator, VatIdValidator
from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.events import EventEmitter, EventMetadata, PurchaseFailed, PurchaseSucceeded
from marketplace_ledger.flow_of_funds import FlowOfFunds
from marketplace_ledger.models import (
    Affiliate,
    AffiliateCredit,
    ChargeProcessorId,
    MerchantAccount,
    Product,
    Purchase,
    Subscription,
    get_platform_merchant_account,
    utcnow,
)
from marketplace_ledger.money import USD, get_rate, get_usd_cents, round_half_up
from marketplace_ledger.processors import (
    ChargeProcessorCardError,
    ChargeProcessorError,
    ChargeProcessorRegistry,
    ChargeProcessorUnavailableError,
)
from marketplace_ledger.services.balance_service import BalanceAmounts, BalanceService
from marketplace_ledger.services.state_machine import PurchaseState, PurchaseStateMachine

logger = logging.getLogger(__name__)


class PurchaseErrorCode:
    """Error codes recorded on failed purchases."""

    INVALID_QUANTITY = "invalid_quantity"
    PRICE_TOO_LOW = "price_too_low"
    NET_NEGATIVE_SELLER_REVENUE = "net_negative_seller_revenue"
    BRAZILIAN_MERCHANT_ACCOUNT_WITH_AFFILIATE = "brazilian_merchant_account_with_affiliate"
    STRIPE_UNAVAILABLE = "stripe_unavailable"
    PAYPAL_UNAVAILABLE = "paypal_unavailable"
    PROCESSOR_ERROR = "processor_error"


class PurchaseError(Exception):
    """Raised when a purchase cannot be processed.

    ``purchase`` is the failed purchase when one was recorded.
    """

    def __init__(self, error_code: str, message: str, purchase: Purchase | None = None):
        self.error_code = error_code
        self.purchase = purchase
        super().__init__(message)


@dataclass
class PurchaseRequest:
    """What the buyer asked for.

    ``custom_price_cents`` is per unit, in the product's currency, and may
    not be lower than the product price. ``shipping_cents`` is in USD.
    """

    product: Product
    charge_processor_id: str = ChargeProcessorId.STRIPE.value
    email: str | None = None
    quantity: int = 1
    custom_price_cents: int | None = None
    affiliate: Affiliate | None = None
    subscription: Subscription | None = None
    is_recurring_subscription_charge: bool = False
    is_updated_original_subscription_purchase: bool = False
    is_preorder_charge: bool = False
    preorder_authorization_purchase: Purchase | None = None
    is_free_trial_purchase: bool = False
    was_product_recommended: bool = False
    shipping_cents: int = 0
    country: str | None = None
    state: str | None = None
    postal_code: str | None = None
    region: str | None = None
    business_vat_id: str | None = None
    paypal_order_id: str | None = None

    @property
    def buyer_location(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "state": self.state,
            "postal_code": self.postal_code,
            "region": self.region,
        }


class PurchaseService:
    """Processes purchases and credits seller and affiliate balances."""

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        processors: ChargeProcessorRegistry,
        balances: BalanceService,
        emitter: EventEmitter | None = None,
        vat_validator: VatIdValidator | None = None,
    ):
        self.session = session
        self.config = config
        self.processors = processors
        self.balances = balances
        self.emitter = emitter or balances.emitter
        self.vat_validator = vat_validator
        self.fee_calculator = FeeCalculator()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, request: PurchaseRequest) -> Purchase:
        """Price, charge and record a purchase.

        Raises:
            PurchaseError: the purchase is invalid or the charge failed
        """
        if request.quantity <= 0:
            raise PurchaseError(PurchaseErrorCode.INVALID_QUANTITY, "Sorry, you've selected an invalid quantity.")

        product = request.product
        purchase = Purchase(
            seller=product.seller,
            product=product,
            subscription=request.subscription,
            affiliate=request.affiliate,
            charge_processor_id=request.charge_processor_id,
            email=request.email,
            quantity=request.quantity,
            is_recurring_subscription_charge=request.is_recurring_subscription_charge,
            is_updated_original_subscription_purchase=request.is_updated_original_subscription_purchase,
            is_preorder_charge=request.is_preorder_charge,
            preorder_authorization_purchase_id=(
                request.preorder_authorization_purchase.purchase_id
                if request.preorder_authorization_purchase is not None
                else None
            ),
            is_free_trial_purchase=request.is_free_trial_purchase,
            was_product_recommended=request.was_product_recommended,
            discover_fee_per_thousand=product.discover_fee_per_thousand,
            country=request.country,
            state=request.state,
            postal_code=request.postal_code,
            business_vat_id=request.business_vat_id,
            paypal_order_id=request.paypal_order_id,
            purchase_state=PurchaseState.IN_PROGRESS.value,
        )

        self.set_price_and_rate(purchase, request)
        self.prepare_merchant_account(purchase)
        self.calculate_fees(purchase)
        self.calculate_taxes(purchase, request)

        purchase.price_cents += purchase.tax_cents
        purchase.total_transaction_cents = purchase.price_cents + purchase.platform_tax_cents
        purchase.shipping_cents = request.shipping_cents
        purchase.price_cents += purchase.shipping_cents
        purchase.total_transaction_cents += purchase.shipping_cents

        self.calculate_fees(purchase)
        self.session.add(purchase)
        self.validate_seller_revenue(purchase)
        self.session.flush()

        if purchase.price_cents > 0 and not purchase.is_free_trial_purchase:
            self.charge(purchase)

        self.update_balance_and_mark_successful(purchase)
        return purchase

    def set_price_and_rate(self, purchase: Purchase, request: PurchaseRequest) -> None:
        product = request.product
        unit_price_cents = product.price_cents
        if request.custom_price_cents is not None:
            if request.custom_price_cents < product.price_cents:
                raise PurchaseError(
                    PurchaseErrorCode.PRICE_TOO_LOW,
                    "Please enter an amount greater than or equal to the minimum.",
                )
            unit_price_cents = request.custom_price_cents

        currency = product.price_currency
        rate = get_rate(currency, self.config.currency_rates)
        purchase.displayed_price_cents = unit_price_cents * request.quantity
        purchase.displayed_price_currency = currency
        purchase.rate_converted_to_usd = rate
        purchase.price_cents = get_usd_cents(currency, purchase.displayed_price_cents, rate)
        purchase.total_transaction_cents = purchase.price_cents
        purchase.affiliate_credit_cents = 0
        purchase.tax_cents = 0
        purchase.platform_tax_cents = 0
        purchase.shipping_cents = 0
        purchase.fee_cents = 0

    def prepare_merchant_account(self, purchase: Purchase) -> MerchantAccount:
        """Use the seller's own account for the processor, else the platform's."""
        merchant_account = self.session.scalars(
            select(MerchantAccount)
            .where(
                MerchantAccount.user_id == purchase.seller.user_id,
                MerchantAccount.charge_processor_id == purchase.charge_processor_id,
                MerchantAccount.active.is_(True),
            )
            .order_by(MerchantAccount.created_at.desc())
            .limit(1)
        ).first()
        if merchant_account is None:
            merchant_account = get_platform_merchant_account(self.session, purchase.charge_processor_id)

        if merchant_account.is_a_brazilian_stripe_connect_account and purchase.affiliate is not None:
            raise PurchaseError(
                PurchaseErrorCode.BRAZILIAN_MERCHANT_ACCOUNT_WITH_AFFILIATE,
                "Affiliate sales are not currently supported for this product.",
            )
        purchase.merchant_account = merchant_account
        return merchant_account

    def fee_context(self, purchase: Purchase) -> FeeContext:
        seller = purchase.seller
        subscription = purchase.subscription
        merchant_account = purchase.merchant_account
        original = self._original_purchase(purchase)
        return FeeContext(
            price_cents=purchase.price_cents,
            charged_using_platform_merchant_account=purchase.charged_using_platform_merchant_account,
            is_brazilian_connect_account=(
                merchant_account is not None and merchant_account.is_a_brazilian_stripe_connect_account
            ),
            merchant_of_record_fee=seller.merchant_of_record_fee_active(self.config.merchant_of_record_fee),
            waive_platform_fee_on_new_sales=seller.waive_platform_fee_on_new_sales,
            tier_fee=seller.tier_fee,
            has_subscription=subscription is not None,
            subscription_flat_fee_applicable=subscription.flat_fee_applicable if subscription else True,
            subscription_mor_fee_applicable=subscription.mor_fee_applicable if subscription else True,
            is_recurring_subscription_charge=purchase.is_recurring_subscription_charge,
            is_updated_original_subscription_purchase=purchase.is_updated_original_subscription_purchase,
            is_preorder_charge=purchase.is_preorder_charge,
            original_discover_fee_per_thousand=original.discover_fee_per_thousand if original else 0,
            charge_discover_fee=purchase.was_product_recommended,
            product_discover_fee_per_thousand=purchase.product.discover_fee_per_thousand,
        )

    def _original_purchase(self, purchase: Purchase) -> Purchase | None:
        if purchase.is_preorder_charge and purchase.preorder_authorization_purchase_id is not None:
            return self.session.get(Purchase, purchase.preorder_authorization_purchase_id)
        subscription = purchase.subscription
        if subscription is not None and subscription.original_purchase_id is not None:
            return self.session.get(Purchase, subscription.original_purchase_id)
        return None

    def calculate_fees(self, purchase: Purchase) -> AffiliateSplit:
        """Set fee_cents, was_discover_fee_charged and affiliate_credit_cents."""
        breakdown = self.fee_calculator.calculate(self.fee_context(purchase))
        purchase.fee_cents = breakdown.fee_cents
        purchase.was_discover_fee_charged = breakdown.was_discover_fee_charged
        split = self.affiliate_split(purchase)
        purchase.affiliate_credit_cents = split.affiliate_credit_cents
        return split

    def affiliate_split(self, purchase: Purchase) -> AffiliateSplit:
        affiliate = purchase.affiliate
        if affiliate is None:
            return AffiliateSplit(affiliate_credit_cents=0)
        displayed_price_usd_cents = get_usd_cents(
            purchase.displayed_price_currency, purchase.displayed_price_cents, purchase.rate_converted_to_usd
        )
        return affiliate_split(
            basis_points=affiliate.basis_points_for(purchase.product.product_id),
            displayed_price_usd_cents=displayed_price_usd_cents,
            fee_cents=purchase.fee_cents,
            is_collaborator=affiliate.is_collaborator,
            seller_bears_affiliate_fee=(
                purchase.seller.bears_affiliate_fee or self.config.sellers_bear_affiliate_fees
            ),
        )

    def calculate_taxes(self, purchase: Purchase, request: PurchaseRequest) -> None:
        if purchase.price_cents == 0 or not request.country:
            return
        calculation = SalesTaxCalculator(
            self.session,
            self.config,
            product=request.product,
            price_cents=purchase.price_cents,
            buyer_location=request.buyer_location,
            shipping_cents=request.shipping_cents,
            quantity=request.quantity,
            buyer_vat_id=request.business_vat_id,
            vat_validator=self.vat_validator,
        ).calculate()

        rate = calculation.zip_tax_rate
        if rate is None:
            return
        purchase.zip_tax_rate = rate
        tax_cents = round_half_up(calculation.tax_cents)
        if rate.is_seller_responsible:
            purchase.tax_cents = tax_cents
        else:
            purchase.platform_tax_cents = tax_cents

    def validate_seller_revenue(self, purchase: Purchase) -> None:
        if purchase.price_cents == 0:
            return
        if purchase.price_cents > purchase.fee_cents + purchase.affiliate_credit_cents:
            return
        self._mark_failed(purchase, PurchaseErrorCode.NET_NEGATIVE_SELLER_REVENUE)
        raise PurchaseError(
            PurchaseErrorCode.NET_NEGATIVE_SELLER_REVENUE,
            "Your purchase failed because the product is not correctly set up. "
            "Please contact the creator for more information.",
            purchase,
        )

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    def charge(self, purchase: Purchase) -> None:
        """Charge the buyer and store what the processor reported.

        Raises:
            PurchaseError: the charge failed; the purchase is marked failed
        """
        processor = self.processors.get(purchase.charge_processor_id)
        try:
            charge = processor.create_charge(
                merchant_account=purchase.merchant_account,
                amount_cents=purchase.total_transaction_cents,
                amount_for_platform_cents=purchase.total_transaction_amount_for_platform_cents,
                reference=str(purchase.purchase_id),
            )
        except ChargeProcessorCardError as e:
            logger.info("Card error %s on purchase %s: %s", e.error_code, purchase.purchase_id, e)
            self._mark_failed(purchase, e.error_code)
            raise PurchaseError(e.error_code, str(e), purchase) from e
        except ChargeProcessorUnavailableError as e:
            logger.error("Error while charging purchase %s: %s", purchase.purchase_id, e)
            code = (
                PurchaseErrorCode.PAYPAL_UNAVAILABLE
                if purchase.charge_processor_id == ChargeProcessorId.PAYPAL.value
                else PurchaseErrorCode.STRIPE_UNAVAILABLE
            )
            self._mark_failed(purchase, code)
            raise PurchaseError(
                code, "There is a temporary problem, please try again (your card was not charged).", purchase
            ) from e
        except ChargeProcessorError as e:
            logger.error("Error while charging purchase %s: %s", purchase.purchase_id, e)
            self._mark_failed(purchase, PurchaseErrorCode.PROCESSOR_ERROR)
            raise PurchaseError(PurchaseErrorCode.PROCESSOR_ERROR, "Sorry, something went wrong.", purchase) from e

        purchase.processor_transaction_id = charge.charge_id
        purchase.flow_of_funds = charge.flow_of_funds or FlowOfFunds.build_simple(
            USD, purchase.total_transaction_cents
        )
        purchase.processor_fee_cents = charge.fee_cents
        purchase.processor_fee_currency = charge.fee_currency
        self.session.flush()

    def _mark_failed(self, purchase: Purchase, error_code: str) -> None:
        purchase.error_code = error_code
        PurchaseStateMachine.transition(purchase, PurchaseState.FAILED)
        self.session.flush()
        self.emitter.emit(
            PurchaseFailed(
                metadata=EventMetadata.create(source_service="purchases"),
                purchase_id=purchase.purchase_id,
                seller_id=purchase.seller_id,
                error_code=error_code,
            )
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def update_balance_and_mark_successful(self, purchase: Purchase) -> None:
        if purchase.is_free_trial_purchase:
            PurchaseStateMachine.transition(purchase, PurchaseState.NOT_CHARGED)
            self.session.flush()
            return

        purchase.succeeded_at = utcnow()
        self.increment_sellers_balance(purchase)
        PurchaseStateMachine.transition(purchase, PurchaseState.SUCCESSFUL)
        self.session.flush()

        self.emitter.emit(
            PurchaseSucceeded(
                metadata=EventMetadata.create(source_service="purchases"),
                purchase_id=purchase.purchase_id,
                seller_id=purchase.seller_id,
                price_cents=purchase.price_cents,
                fee_cents=purchase.fee_cents,
                affiliate_credit_cents=purchase.affiliate_credit_cents,
                total_transaction_cents=purchase.total_transaction_cents,
            )
        )

    def increment_sellers_balance(self, purchase: Purchase) -> None:
        """Credit the affiliate, then the seller when the platform holds the funds."""
        if purchase.price_cents == 0:
            return

        self.increment_affiliates_balance(purchase)

        if not purchase.charged_using_platform_merchant_account:
            return

        flow_of_funds = purchase.flow_of_funds or FlowOfFunds.build_simple(USD, purchase.total_transaction_cents)
        net_cents = purchase.payment_cents - purchase.affiliate_credit_cents
        transaction = self.balances.create_transaction(
            purchase.seller,
            purchase.merchant_account,
            purchase=purchase,
            issued_amount=BalanceAmounts.create_issued_amount_for_seller(flow_of_funds, net_cents),
            holding_amount=BalanceAmounts.create_holding_amount_for_seller(flow_of_funds, net_cents),
        )
        purchase.purchase_success_balance = transaction.balance

    def increment_affiliates_balance(self, purchase: Purchase) -> None:
        if purchase.affiliate_credit_cents <= 0 or purchase.affiliate is None:
            return

        affiliate = purchase.affiliate
        split = self.affiliate_split(purchase)
        flow_of_funds = purchase.flow_of_funds or FlowOfFunds.build_simple(USD, purchase.total_transaction_cents)
        transaction = self.balances.create_transaction(
            affiliate.affiliate_user,
            self.affiliate_merchant_account(purchase),
            purchase=purchase,
            issued_amount=BalanceAmounts.create_issued_amount_for_affiliate(
                flow_of_funds, purchase.affiliate_credit_cents
            ),
            holding_amount=BalanceAmounts.create_holding_amount_for_affiliate(
                flow_of_funds, purchase.affiliate_credit_cents
            ),
        )
        purchase.affiliate_credit = AffiliateCredit(
            affiliate=affiliate,
            affiliate_user_id=affiliate.affiliate_user_id,
            seller_id=purchase.seller_id,
            amount_cents=purchase.affiliate_credit_cents,
            fee_cents=split.affiliate_fee_cents,
            basis_points=split.basis_points,
            success_balance_id=transaction.balance_id,
        )
        self.session.flush()

    def affiliate_merchant_account(self, purchase: Purchase) -> MerchantAccount:
        """Affiliate balances are held on the platform's account for the processor."""
        return get_platform_merchant_account(self.session, purchase.charge_processor_id)
