"""Credits: balance adjustments that are not sales.

Each credit is written, posted as a balance transaction, and linked to
the balance it landed in.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from marketplace_ledger.calculators.fee_calculator import PROCESSOR_FEE_PER_THOUSAND, PROCESSOR_FIXED_FEE_CENTS
from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.events import CreditIssued, EventMetadata
from marketplace_ledger.models import (
    Balance,
    ChargeProcessorId,
    Credit,
    Dispute,
    HolderOfFunds,
    MerchantAccount,
    Purchase,
    Refund,
    User,
    get_platform_merchant_account,
)
from marketplace_ledger.money import USD, round_half_up, usd_cents_to_currency
from marketplace_ledger.processors import ChargeProcessorRegistry
from marketplace_ledger.services.balance_service import BalanceAmounts, BalanceService

logger = logging.getLogger(__name__)


class CreditService:
    """Creates credits and posts them to balances."""

    def __init__(
        self,
        session: Session,
        balances: BalanceService,
        processors: ChargeProcessorRegistry,
        config: LedgerConfig | None = None,
    ):
        self.session = session
        self.balances = balances
        self.processors = processors
        self.config = config or LedgerConfig()

    def _post(
        self,
        credit: Credit,
        reason: str,
        issued_amount: BalanceAmounts | None = None,
        holding_amount: BalanceAmounts | None = None,
    ) -> Credit:
        self.session.add(credit)
        self.session.flush()

        issued_amount = issued_amount or BalanceAmounts(USD, credit.amount_cents, credit.amount_cents)
        holding_amount = holding_amount or issued_amount
        transaction = self.balances.create_transaction(
            credit.user,
            credit.merchant_account,
            credit=credit,
            issued_amount=issued_amount,
            holding_amount=holding_amount,
        )
        credit.balance = transaction.balance
        self.session.flush()

        self.balances.emitter.emit(
            CreditIssued(
                metadata=EventMetadata.create(source_service="credits"),
                credit_id=credit.credit_id,
                user_id=credit.user_id,
                amount_cents=credit.amount_cents,
                reason=reason,
            )
        )
        return credit

    def _platform_account(self, charge_processor_id: str = ChargeProcessorId.STRIPE.value) -> MerchantAccount:
        return get_platform_merchant_account(self.session, charge_processor_id)

    def _platform_account_for(self, purchase: Purchase) -> MerchantAccount:
        if purchase.charge_processor_id == ChargeProcessorId.STRIPE.value:
            return self._platform_account(ChargeProcessorId.STRIPE.value)
        return self._platform_account(ChargeProcessorId.BRAINTREE.value)

    # ------------------------------------------------------------------

    def create_for_credit(self, user: User, amount_cents: int, crediting_user_id: UUID | None = None) -> Credit:
        """Manual credit (or debit, when negative) from a team member."""
        credit = Credit(
            user=user,
            merchant_account=self._platform_account(),
            amount_cents=amount_cents,
            crediting_user_id=crediting_user_id,
        )
        return self._post(credit, "manual")

    def create_for_dispute_won(
        self,
        user: User,
        merchant_account: MerchantAccount,
        dispute: Dispute,
        chargedback_purchase: Purchase,
        issued_amount: BalanceAmounts,
        holding_amount: BalanceAmounts,
    ) -> Credit:
        credit = Credit(
            user=user,
            merchant_account=merchant_account,
            amount_cents=issued_amount.net_cents,
            dispute=dispute,
            chargebacked_purchase_id=chargedback_purchase.purchase_id,
        )
        return self._post(credit, "dispute_won", issued_amount, holding_amount)

    def create_for_refund_fee_retention(self, refund: Refund) -> Credit | None:
        """Keep the processor fee of a refunded sale.

        Connected accounts were debited the whole application fee, which
        includes tax and the affiliate credit the platform keeps no more,
        so the seller is credited that share. Platform-managed accounts are
        debited the processor fee share instead.
        """
        purchase = refund.purchase

        if not purchase.charged_using_platform_merchant_account:
            refundable_portion = purchase.platform_tax_cents + purchase.affiliate_credit_cents
            if refundable_portion == 0:
                return None
            amount_cents = round_half_up(Decimal(refundable_portion) * refund.amount_cents / purchase.price_cents)
            credit = Credit(
                user=purchase.seller,
                merchant_account=self._platform_account(),
                amount_cents=amount_cents,
                fee_retention_refund=refund,
            )
            return self._post(credit, "refund_fee_retention")

        if purchase.processor_fee_cents is not None and purchase.processor_fee_currency == USD:
            retained = round_half_up(Decimal(purchase.processor_fee_cents) * refund.amount_cents / purchase.price_cents)
        else:
            retained = round_half_up(
                Decimal(refund.amount_cents) * PROCESSOR_FEE_PER_THOUSAND / 1000
                + Decimal(PROCESSOR_FIXED_FEE_CENTS) * refund.amount_cents / purchase.price_cents
            )

        merchant_account = purchase.merchant_account or self._platform_account_for(purchase)
        credit = Credit(
            user=purchase.seller,
            merchant_account=merchant_account,
            amount_cents=-retained,
            fee_retention_refund=refund,
        )
        refund.retained_fee_cents = retained

        holding_cents = usd_cents_to_currency(
            merchant_account.currency, credit.amount_cents, self.config.currency_rates.get(merchant_account.currency)
        )
        if merchant_account.holder_of_funds == HolderOfFunds.STRIPE.value:
            processor = self.processors.get(merchant_account.charge_processor_id)
            debited = processor.debit_account_for_refund_fee(merchant_account, retained)
            # Non-US accounts are debited by reversing old transfers; the
            # processor reports what that came to in the holding currency.
            if debited is not None and merchant_account.country != "US":
                holding_cents = -debited

        return self._post(
            credit,
            "refund_fee_retention",
            BalanceAmounts(USD, credit.amount_cents, credit.amount_cents),
            BalanceAmounts(merchant_account.currency, holding_cents, holding_cents),
        )

    def create_for_vat_refund(self, refund: Refund) -> Credit:
        """Give back the seller's share of a tax-only refund on a connected account."""
        purchase = refund.purchase
        refunded_vat = refund.total_transaction_cents
        refunded_platform_amount = int(
            Decimal(purchase.total_transaction_amount_for_platform_cents) * refunded_vat / purchase.total_transaction_cents
        )
        credit = Credit(
            user=purchase.seller,
            merchant_account=self._platform_account_for(purchase),
            amount_cents=refunded_vat - refunded_platform_amount,
            refund=refund,
        )
        return self._post(credit, "vat_refund")

    def create_for_vat_exclusive_refund(self, refund: Refund) -> Credit | None:
        """Even out an earlier VAT refund credit when the rest of the purchase is refunded.

        Only applies when tax was charged and this refund carries none,
        because the tax was already refunded on its own.
        """
        purchase = refund.purchase
        if refund.platform_tax_cents > 0 or purchase.platform_tax_cents == 0:
            return None

        refunded = Decimal(refund.total_transaction_cents)
        platform_amount = purchase.total_transaction_amount_for_platform_cents
        platform_amount_sans_vat = platform_amount - purchase.platform_tax_cents

        refunded_platform_amount = platform_amount * refunded / purchase.total_transaction_cents
        expected_refunded_platform_amount = platform_amount_sans_vat * refunded / purchase.price_cents

        credit = Credit(
            user=purchase.seller,
            merchant_account=self._platform_account_for(purchase),
            amount_cents=round_half_up(expected_refunded_platform_amount - refunded_platform_amount),
            refund=refund,
        )
        return self._post(credit, "vat_exclusive_refund")

    def create_for_partial_refund_transfer_reversal(
        self,
        amount_cents_usd: int,
        amount_cents_holding_currency: int,
        merchant_account: MerchantAccount,
        crediting_user_id: UUID | None = None,
    ) -> Credit:
        credit = Credit(
            user=merchant_account.user,
            merchant_account=merchant_account,
            amount_cents=amount_cents_usd,
            crediting_user_id=crediting_user_id,
        )
        return self._post(
            credit,
            "transfer_reversal",
            BalanceAmounts(USD, amount_cents_usd, amount_cents_usd),
            BalanceAmounts(merchant_account.currency, amount_cents_holding_currency, amount_cents_holding_currency),
        )

    def create_for_balance_forfeit(self, balance: Balance, crediting_user_id: UUID | None = None) -> Credit | None:
        """Zero out an unpaid balance and mark it forfeited.

        Returns the zeroing credit, or None when the balance was already empty.
        """
        credit = None
        if balance.amount_cents != 0 or balance.holding_amount_cents != 0:
            credit = Credit(
                user=balance.user,
                merchant_account=balance.merchant_account,
                amount_cents=-balance.amount_cents,
                crediting_user_id=crediting_user_id,
            )
            self.session.add(credit)
            self.session.flush()
            transaction = self.balances.create_transaction(
                balance.user,
                balance.merchant_account,
                credit=credit,
                issued_amount=BalanceAmounts(balance.currency, -balance.amount_cents, -balance.amount_cents),
                holding_amount=BalanceAmounts(
                    balance.holding_currency, -balance.holding_amount_cents, -balance.holding_amount_cents
                ),
                update_user_balance=False,
            )
            credit.balance = self.balances.apply(transaction, balance)
            logger.info("Forfeited %s cents of balance %s", -credit.amount_cents, balance.balance_id)

        self.balances.mark_forfeited(balance)
        return credit
