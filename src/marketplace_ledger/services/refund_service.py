"""Refunds of purchases and the balance movements they cause.

A refund is recorded in three steps:
1. The processor refunds the charge and reports the flow of funds
2. A Refund row is built from the purchase amounts and what the
   processor refunded
3. Seller and affiliate balances are decremented, followed by the
   follow-up credits (fee retention, VAT) and transfer reversals
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.calculators import RefundAmounts, RefundCalculator
from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.events import EventEmitter, EventMetadata, RefundIssued, TaxRefundIssued
from marketplace_ledger.flow_of_funds import FlowOfFunds
from marketplace_ledger.models import (
    AffiliatePartialRefund,
    BalanceTransaction,
    Dispute,
    HolderOfFunds,
    Purchase,
    Refund,
    User,
    get_platform_merchant_account,
)
from marketplace_ledger.money import USD, currency_amount_to_cents, get_usd_cents
from marketplace_ledger.processors import (
    ChargeProcessorAlreadyRefundedError,
    ChargeProcessorInsufficientFundsError,
    ChargeProcessorInvalidRequestError,
    ChargeProcessorRegistry,
    ChargeProcessorUnavailableError,
    ProcessorRefund,
)
from marketplace_ledger.services.balance_service import BalanceAmounts, BalanceService
from marketplace_ledger.services.credit_service import CreditService

logger = logging.getLogger(__name__)

ERROR_AMOUNT_TOO_HIGH = "Refund amount cannot be greater than the purchase price."
ERROR_DISCONNECTED_ACCOUNT = (
    "We cannot refund this sale because you have disconnected the associated payment account on {processor}. "
    "Please connect it and try again."
)
ERROR_REFUNDS_DISABLED = "Refunds are temporarily disabled in your account."
ERROR_INSUFFICIENT_FUNDS = "Your PayPal account does not have sufficient funds to make this refund."
ERROR_UNAVAILABLE = "There is a temporary problem. Try to refund later."
ERROR_INVALID_AMOUNT = "The purchase could not be refunded. Please check the refund amount."


@dataclass
class RefundResult:
    """Outcome of a refund attempt.

    ``success`` is False both for failures (``errors`` set) and for
    refunds that had nothing to do (no errors).
    """

    success: bool
    refund: Refund | None = None
    errors: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, *errors: str) -> RefundResult:
        return cls(success=False, errors=list(errors))

    @classmethod
    def skipped(cls) -> RefundResult:
        return cls(success=False)


class RefundService:
    """Refunds purchases through the charge processor and updates balances."""

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        processors: ChargeProcessorRegistry,
        balances: BalanceService,
        credits: CreditService,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.config = config
        self.processors = processors
        self.balances = balances
        self.credits = credits
        self.emitter = emitter or balances.emitter

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def refund(
        self,
        purchase: Purchase,
        refunding_user_id: UUID | None,
        amount: Decimal | str | None = None,
    ) -> RefundResult:
        """Refund a purchase, fully or by ``amount``.

        ``amount`` is in units of the displayed currency (``"4.99"``) and
        excludes platform-collected tax, which is refunded proportionally
        on top of it.
        """
        if amount is None:
            return self.refund_and_save(purchase, refunding_user_id)

        refund_amount_cents = self.refunding_amount_cents(purchase, amount)
        if refund_amount_cents > purchase.amount_refundable_cents:
            return RefundResult.failed(ERROR_AMOUNT_TOO_HIGH)
        if refund_amount_cents in (purchase.price_cents, purchase.amount_refundable_cents):
            # Same as refunding everything that is left; skip the tax split.
            return self.refund_and_save(purchase, refunding_user_id)
        return self.refund_and_save(purchase, refunding_user_id, amount_cents=refund_amount_cents)

    def refunding_amount_cents(self, purchase: Purchase, amount: Decimal | str) -> int:
        currency = purchase.displayed_price_currency
        cents = currency_amount_to_cents(currency, amount)
        return get_usd_cents(currency, cents, purchase.rate_converted_to_usd)

    def refund_and_save(
        self,
        purchase: Purchase,
        refunding_user_id: UUID | None,
        amount_cents: int | None = None,
        is_for_fraud: bool = False,
    ) -> RefundResult:
        """Refund through the processor and record it. Idempotent.

        ``amount_cents`` is a USD portion of the price; None refunds
        everything that is left.
        """
        if (
            not purchase.processor_transaction_id
            or purchase.is_refunded
            or purchase.amount_refundable_cents <= 0
        ):
            return RefundResult.skipped()

        merchant_account = purchase.merchant_account
        if merchant_account is not None and not merchant_account.active and (
            merchant_account.is_a_stripe_connect_account or merchant_account.is_a_paypal_connect_account
        ):
            return RefundResult.failed(
                ERROR_DISCONNECTED_ACCOUNT.format(processor=purchase.charge_processor_id.title())
            )

        if purchase.seller.refunds_disabled:
            refunding_user = self.session.get(User, refunding_user_id) if refunding_user_id else None
            if refunding_user is None or not refunding_user.is_team_member:
                return RefundResult.failed(ERROR_REFUNDS_DISABLED)

        gross_amount_cents = None
        if amount_cents is not None:
            gross_amount_cents = RefundCalculator(purchase.amounts()).gross_refund_for_amount(amount_cents)

        logger.info(
            "Refunding purchase %s amount_cents=%s amount_refundable_cents=%s",
            purchase.purchase_id,
            amount_cents,
            purchase.amount_refundable_cents,
        )
        processor = self.processors.get(purchase.charge_processor_id)
        try:
            processor_refund = processor.refund(
                purchase.processor_transaction_id,
                amount_cents=gross_amount_cents,
                merchant_account=merchant_account,
                reverse_transfer=not (purchase.chargedback and purchase.chargeback_reversed),
                is_for_fraud=is_for_fraud,
            )
        except ChargeProcessorAlreadyRefundedError as e:
            logger.error("Charge was already refunded in purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.skipped()
        except ChargeProcessorInsufficientFundsError as e:
            logger.error("Seller account cannot cover refund of purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.failed(ERROR_INSUFFICIENT_FUNDS)
        except ChargeProcessorInvalidRequestError as e:
            logger.error("Invalid refund request for purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.skipped()
        except ChargeProcessorUnavailableError as e:
            logger.error("Charge processor unavailable refunding purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.failed(ERROR_UNAVAILABLE)

        logger.info(
            "Refunded purchase %s with %s, flow of funds %s",
            purchase.purchase_id,
            processor_refund.refund_id,
            processor_refund.flow_of_funds.to_dict() if processor_refund.flow_of_funds else None,
        )
        flow_of_funds = processor_refund.flow_of_funds or FlowOfFunds.build_simple(
            USD, -(gross_amount_cents if gross_amount_cents is not None else purchase.gross_amount_refundable_cents)
        )
        return self.refund_purchase(purchase, flow_of_funds, refunding_user_id, processor_refund, is_for_fraud)

    def refund_for_fraud(self, purchase: Purchase, refunding_user_id: UUID | None) -> RefundResult:
        """Refund everything; the platform keeps no processor fee from the seller."""
        return self.refund_and_save(purchase, refunding_user_id, is_for_fraud=True)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def refund_purchase(
        self,
        purchase: Purchase,
        flow_of_funds: FlowOfFunds,
        refunding_user_id: UUID | None,
        processor_refund: ProcessorRefund | None = None,
        is_for_fraud: bool = False,
    ) -> RefundResult:
        """Record a refund the processor already made."""
        funds_refunded = abs(flow_of_funds.issued_amount.cents)
        partially_refunded_previously = purchase.is_partially_refunded
        vat_already_refunded = purchase.vat_already_refunded

        fully_refunded = purchase.gross_amount_refunded_cents + funds_refunded >= purchase.total_transaction_cents
        amounts = RefundCalculator(purchase.amounts()).build_refund(
            funds_refunded,
            partially_refunded_previously=partially_refunded_previously,
            fully_refunded_now=fully_refunded,
        )
        if amounts is None:
            logger.error(
                "Failed creating a refund for purchase %s, flow of funds %s",
                purchase.purchase_id,
                flow_of_funds.to_dict(),
            )
            return RefundResult.failed(ERROR_INVALID_AMOUNT)

        purchase.is_refunded = fully_refunded
        purchase.is_partially_refunded = not fully_refunded
        purchase.is_refund_chargeback_fee_waived = (
            not purchase.charged_using_platform_merchant_account or is_for_fraud
        )

        refund = self._add_refund(
            purchase,
            amounts,
            refunding_user_id=refunding_user_id,
            is_for_fraud=is_for_fraud,
            status=processor_refund.status if processor_refund else None,
            processor_refund_id=processor_refund.refund_id if processor_refund else None,
        )
        self.decrement_balance_for_refund_or_chargeback(
            purchase,
            flow_of_funds,
            refund=refund,
            partially_refunded_previously=partially_refunded_previously,
        )

        if purchase.chargedback and purchase.chargeback_reversed:
            self._reverse_transfer_made_for_dispute_win(purchase, refund)
        if purchase.is_partially_refunded and vat_already_refunded:
            self._reverse_excess_amount_from_transfer(purchase, refund)
        if not purchase.is_refund_chargeback_fee_waived:
            self.credits.create_for_refund_fee_retention(refund)
        if self._settles_tax_with_seller(purchase):
            self.credits.create_for_vat_exclusive_refund(refund)

        self._emit_refund_issued(purchase, refund)
        return RefundResult(success=True, refund=refund)

    def refund_partial_purchase(
        self,
        purchase: Purchase,
        gross_refund_amount_cents: int,
        refunding_user_id: UUID | None,
        processor_refund_id: str | None = None,
    ) -> RefundResult:
        """Record a partial refund made directly at the processor."""
        partially_refunded_previously = purchase.is_partially_refunded
        fully_refunded = (
            purchase.gross_amount_refunded_cents + gross_refund_amount_cents >= purchase.total_transaction_cents
        )
        calculator = RefundCalculator(purchase.amounts())
        if partially_refunded_previously and fully_refunded:
            amounts = calculator.build_partial_full_refund()
        else:
            amounts = calculator.build_refund(gross_refund_amount_cents)
        if amounts is None:
            return RefundResult.failed(ERROR_INVALID_AMOUNT)

        purchase.is_refunded = fully_refunded
        purchase.is_partially_refunded = not fully_refunded
        purchase.is_refund_chargeback_fee_waived = not purchase.charged_using_platform_merchant_account

        refund = self._add_refund(
            purchase, amounts, refunding_user_id=refunding_user_id, processor_refund_id=processor_refund_id
        )
        if self._settles_tax_with_seller(purchase):
            self.credits.create_for_vat_exclusive_refund(refund)
        if not purchase.is_refund_chargeback_fee_waived:
            self.credits.create_for_refund_fee_retention(refund)

        self._emit_refund_issued(purchase, refund)
        return RefundResult(success=True, refund=refund)

    def refund_platform_taxes(
        self,
        purchase: Purchase,
        refunding_user_id: UUID | None,
        note: str | None = None,
        business_vat_id: str | None = None,
    ) -> RefundResult:
        """Refund only the tax the platform collected, e.g. for a late business VAT id."""
        refundable_cents = purchase.platform_tax_refundable_cents
        if purchase.is_refunded or refundable_cents <= 0:
            return RefundResult.skipped()

        logger.info("Refunding purchase %s platform taxes: %s", purchase.purchase_id, refundable_cents)
        processor = self.processors.get(purchase.charge_processor_id)
        try:
            processor_refund = processor.refund(
                purchase.processor_transaction_id,
                amount_cents=refundable_cents,
                merchant_account=purchase.merchant_account,
                reverse_transfer=False,
            )
        except ChargeProcessorAlreadyRefundedError as e:
            logger.error("Charge was already refunded in purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.skipped()
        except ChargeProcessorInvalidRequestError:
            return RefundResult.skipped()
        except ChargeProcessorUnavailableError as e:
            logger.error("Error while refunding a charge in purchase %s: %s", purchase.purchase_id, e)
            return RefundResult.failed(ERROR_UNAVAILABLE)

        refund = self._add_refund(
            purchase,
            RefundAmounts(total_transaction_cents=refundable_cents, platform_tax_cents=refundable_cents),
            refunding_user_id=refunding_user_id,
            note=note,
            business_vat_id=business_vat_id,
            processor_refund_id=processor_refund.refund_id,
        )
        if self._settles_tax_with_seller(purchase):
            self.credits.create_for_vat_refund(refund)

        self.emitter.emit(
            TaxRefundIssued(
                metadata=_metadata(refunding_user_id),
                purchase_id=purchase.purchase_id,
                refund_id=refund.refund_id,
                platform_tax_cents=refund.platform_tax_cents,
                business_vat_id=business_vat_id,
            )
        )
        return RefundResult(success=True, refund=refund)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def decrement_balance_for_refund_or_chargeback(
        self,
        purchase: Purchase,
        flow_of_funds: FlowOfFunds,
        refund: Refund | None = None,
        dispute: Dispute | None = None,
        partially_refunded_previously: bool = False,
    ) -> None:
        """Take a refund or chargeback out of the affiliate and seller balances."""
        if not purchase.seller_balance_update_eligible(partially_refunded_previously):
            return

        decrement = RefundCalculator(purchase.amounts()).balance_decrement(
            refund=refund.amounts if refund is not None else None,
            is_dispute=dispute is not None,
            is_partially_refunded=purchase.is_partially_refunded,
        )
        self._decrement_affiliate_balance(
            purchase, flow_of_funds, decrement.affiliate_cents, decrement.affiliate_fee_cents, refund, dispute
        )
        self._decrement_seller_balance(purchase, flow_of_funds, decrement.seller_cents, refund, dispute)
        self.session.flush()

    def _decrement_affiliate_balance(
        self,
        purchase: Purchase,
        flow_of_funds: FlowOfFunds,
        refund_cents: int,
        fee_cents: int,
        refund: Refund | None,
        dispute: Dispute | None,
    ) -> None:
        credit = purchase.affiliate_credit
        if purchase.affiliate_credit_cents == 0 or refund_cents == 0 or credit is None:
            return

        transaction = self.balances.create_transaction(
            credit.affiliate_user,
            get_platform_merchant_account(self.session, purchase.charge_processor_id),
            refund=refund,
            dispute=dispute,
            issued_amount=BalanceAmounts.create_issued_amount_for_affiliate(flow_of_funds, -refund_cents),
            holding_amount=BalanceAmounts.create_holding_amount_for_affiliate(flow_of_funds, -refund_cents),
        )
        if refund is not None:
            credit.refund_balance_id = transaction.balance_id
        else:
            credit.chargeback_balance_id = transaction.balance_id

        if purchase.affiliate_credit_cents != refund_cents:
            self.session.add(
                AffiliatePartialRefund(
                    purchase=purchase,
                    affiliate_credit_id=credit.affiliate_credit_id,
                    affiliate_id=credit.affiliate_id,
                    affiliate_user_id=credit.affiliate_user_id,
                    seller_id=purchase.seller_id,
                    total_credit_cents=purchase.affiliate_credit_cents,
                    amount_cents=refund_cents,
                    fee_cents=fee_cents,
                    balance_id=transaction.balance_id,
                )
            )

    def _decrement_seller_balance(
        self,
        purchase: Purchase,
        flow_of_funds: FlowOfFunds,
        refund_cents: int,
        refund: Refund | None,
        dispute: Dispute | None,
    ) -> None:
        if refund_cents == 0 or not purchase.charged_using_platform_merchant_account:
            return

        transaction = self.balances.create_transaction(
            purchase.seller,
            purchase.merchant_account or get_platform_merchant_account(self.session, purchase.charge_processor_id),
            refund=refund,
            dispute=dispute,
            issued_amount=BalanceAmounts.create_issued_amount_for_seller(flow_of_funds, -refund_cents),
            holding_amount=BalanceAmounts.create_holding_amount_for_seller(flow_of_funds, -refund_cents),
        )
        if refund is not None:
            purchase.purchase_refund_balance = transaction.balance
        else:
            purchase.purchase_chargeback_balance = transaction.balance

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _reverse_transfer_made_for_dispute_win(self, purchase: Purchase, refund: Refund) -> None:
        """Pull back the seller's share from the transfer that paid out a won dispute."""
        merchant_account = purchase.merchant_account
        dispute = purchase.dispute
        if merchant_account is None or merchant_account.holder_of_funds != HolderOfFunds.STRIPE.value:
            return
        if dispute is None or dispute.won_at is None:
            return

        processor = self.processors.get(purchase.charge_processor_id)
        transfer_id = processor.find_transfer(
            merchant_account, f"Dispute {dispute.charge_processor_dispute_id} won"
        )
        if transfer_id is None:
            return

        decrement = RefundCalculator(purchase.amounts()).balance_decrement(
            refund=refund.amounts, is_partially_refunded=purchase.is_partially_refunded
        )
        if decrement.seller_cents > 0:
            processor.reverse_transfer(transfer_id, decrement.seller_cents)

    def _reverse_excess_amount_from_transfer(self, purchase: Purchase, refund: Refund) -> None:
        """Reverse what the refund's own transfer reversal left on a managed account.

        Once the tax was refunded separately, the processor reverses less
        from the seller's transfer than the seller's balance was debited.
        """
        merchant_account = purchase.merchant_account
        if merchant_account is None or merchant_account.holder_of_funds != HolderOfFunds.STRIPE.value:
            return
        if not purchase.vat_already_refunded:
            return

        seller_transaction = self.session.scalars(
            select(BalanceTransaction)
            .where(
                BalanceTransaction.refund_id == refund.refund_id,
                BalanceTransaction.user_id == purchase.seller_id,
            )
            .order_by(BalanceTransaction.created_at.desc())
            .limit(1)
        ).first()
        if seller_transaction is None:
            return

        processor = self.processors.get(purchase.charge_processor_id)
        transfer_id = processor.transfer_for_charge(purchase.processor_transaction_id)
        if transfer_id is None:
            return

        to_be_reversed = abs(seller_transaction.issued_amount_net_cents)
        already_reversed = processor.reversed_amount_for_refund(
            purchase.processor_transaction_id, refund.processor_refund_id
        )
        if already_reversed >= to_be_reversed:
            return

        reversal = processor.reverse_transfer(transfer_id, to_be_reversed - already_reversed)
        self.credits.create_for_partial_refund_transfer_reversal(
            -reversal.amount_cents,
            -abs(reversal.holding_amount_cents),
            merchant_account,
        )

    # ------------------------------------------------------------------

    def _add_refund(self, purchase: Purchase, amounts: RefundAmounts, **kwargs) -> Refund:
        refund = Refund.from_amounts(amounts, **kwargs)
        purchase.refunds.append(refund)
        self.session.add(refund)
        self.session.flush()
        return refund

    @staticmethod
    def _settles_tax_with_seller(purchase: Purchase) -> bool:
        return bool(purchase.paypal_order_id) or purchase.charged_using_stripe_connect_account

    def _emit_refund_issued(self, purchase: Purchase, refund: Refund) -> None:
        self.emitter.emit(
            RefundIssued(
                metadata=_metadata(refund.refunding_user_id),
                purchase_id=purchase.purchase_id,
                refund_id=refund.refund_id,
                amount_cents=refund.amount_cents,
                fee_cents=refund.fee_cents,
                total_transaction_cents=refund.total_transaction_cents,
                is_partial=purchase.is_partially_refunded,
                is_for_fraud=refund.is_for_fraud,
            )
        )


def _metadata(refunding_user_id: UUID | None) -> EventMetadata:
    return EventMetadata.create(
        actor_id=refunding_user_id,
        actor_type="user" if refunding_user_id is not None else "system",
        source_service="refunds",
    )
