"""Chargebacks: formalized, won and lost disputes."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace_ledger.events import ChargebackRecorded, ChargebackReversed, DisputeLost, EventEmitter, EventMetadata
from marketplace_ledger.calculators import RefundCalculator
from marketplace_ledger.flow_of_funds import Amount, FlowOfFunds
from marketplace_ledger.models import BalanceTransaction, Dispute, HolderOfFunds, Purchase
from marketplace_ledger.money import USD, usd_cents_to_currency
from marketplace_ledger.processors import ChargeProcessorRegistry
from marketplace_ledger.services.balance_service import BalanceAmounts, BalanceService
from marketplace_ledger.services.credit_service import CreditService
from marketplace_ledger.services.refund_service import RefundService
from marketplace_ledger.services.state_machine import DisputeState, DisputeStateMachine

logger = logging.getLogger(__name__)


class DisputeService:
    """Records chargebacks and their outcome against seller balances."""

    def __init__(
        self,
        session: Session,
        processors: ChargeProcessorRegistry,
        balances: BalanceService,
        credits: CreditService,
        refunds: RefundService,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.processors = processors
        self.balances = balances
        self.credits = credits
        self.refunds = refunds
        self.emitter = emitter or balances.emitter

    def handle_dispute_formalized(
        self,
        purchase: Purchase,
        formalized_at: datetime,
        processor_dispute_id: str | None = None,
        flow_of_funds: FlowOfFunds | None = None,
    ) -> Dispute | None:
        """Record a chargeback and take it out of the balances.

        A purchase is charged back at most once; repeated notifications
        return the existing dispute.
        """
        if not purchase.is_successful:
            logger.info("Ignoring dispute %s on unsuccessful purchase %s", processor_dispute_id, purchase.purchase_id)
            return None
        if purchase.chargedback:
            return purchase.dispute

        amount_cents = purchase.gross_amount_refundable_cents
        purchase.chargeback_date = formalized_at
        dispute = Dispute(
            purchase=purchase,
            state=DisputeState.FORMALIZED.value,
            charge_processor_dispute_id=processor_dispute_id,
            amount_cents=amount_cents,
            formalized_at=formalized_at,
        )
        self.session.add(dispute)
        self.session.flush()

        self.refunds.decrement_balance_for_refund_or_chargeback(
            purchase,
            flow_of_funds or self._chargeback_flow_of_funds(purchase, amount_cents),
            dispute=dispute,
        )
        logger.info("Chargeback %s recorded for purchase %s", processor_dispute_id, purchase.purchase_id)

        self.emitter.emit(
            ChargebackRecorded(
                metadata=EventMetadata.create(actor_type="webhook", source_service="disputes"),
                purchase_id=purchase.purchase_id,
                dispute_id=dispute.dispute_id,
                amount_cents=amount_cents,
            )
        )
        return dispute

    def _chargeback_flow_of_funds(self, purchase: Purchase, amount_cents: int) -> FlowOfFunds:
        """Flow of funds for a chargeback the processor reported no amounts for.

        Managed accounts in another currency get the seller's share converted
        to their holding currency.
        """
        flow_of_funds = FlowOfFunds.build_simple(USD, -amount_cents)
        account = purchase.merchant_account
        if account is None or account.currency == USD:
            return flow_of_funds

        decrement = RefundCalculator(purchase.amounts()).balance_decrement(
            is_dispute=True, is_partially_refunded=purchase.is_partially_refunded
        )
        rate = self.credits.config.currency_rates.get(account.currency)
        return replace(
            flow_of_funds,
            merchant_account_gross_amount=Amount(
                account.currency, usd_cents_to_currency(account.currency, -amount_cents, rate)
            ),
            merchant_account_net_amount=Amount(
                account.currency, usd_cents_to_currency(account.currency, -decrement.seller_cents, rate)
            ),
        )

    def handle_dispute_won(self, purchase: Purchase, won_at: datetime) -> Dispute | None:
        """Reverse a chargeback: give back everything the dispute took."""
        dispute = purchase.dispute
        if not purchase.is_successful or not purchase.chargedback or dispute is None:
            logger.info("Ignoring won dispute on purchase %s", purchase.purchase_id)
            return None
        if purchase.chargeback_reversed:
            return dispute

        DisputeStateMachine.validate_transition(dispute.state, DisputeState.WON)
        dispute.state = DisputeState.WON.value
        dispute.won_at = won_at
        purchase.chargeback_reversed = True
        self.session.flush()

        transactions = self.session.scalars(
            select(BalanceTransaction)
            .where(BalanceTransaction.dispute_id == dispute.dispute_id)
            .order_by(BalanceTransaction.created_at)
        ).all()
        for transaction in transactions:
            issued = BalanceAmounts(
                transaction.issued_amount_currency,
                transaction.issued_amount_gross_cents,
                transaction.issued_amount_net_cents,
            ).negated()
            holding = BalanceAmounts(
                transaction.holding_amount_currency,
                transaction.holding_amount_gross_cents,
                transaction.holding_amount_net_cents,
            ).negated()
            self.credits.create_for_dispute_won(
                transaction.user, transaction.merchant_account, dispute, purchase, issued, holding
            )
            if transaction.user_id == purchase.seller_id:
                self._transfer_dispute_win(purchase, dispute, issued.net_cents)

        self.emitter.emit(
            ChargebackReversed(
                metadata=EventMetadata.create(actor_type="webhook", source_service="disputes"),
                purchase_id=purchase.purchase_id,
                dispute_id=dispute.dispute_id,
            )
        )
        return dispute

    def handle_dispute_lost(self, purchase: Purchase, lost_at: datetime) -> Dispute | None:
        dispute = purchase.dispute
        if dispute is None:
            logger.info("Ignoring lost dispute on purchase %s without a dispute", purchase.purchase_id)
            return None
        if dispute.state == DisputeState.LOST.value:
            return dispute

        DisputeStateMachine.validate_transition(dispute.state, DisputeState.LOST)
        dispute.state = DisputeState.LOST.value
        dispute.lost_at = lost_at
        self.session.flush()

        self.emitter.emit(
            DisputeLost(
                metadata=EventMetadata.create(actor_type="webhook", source_service="disputes"),
                purchase_id=purchase.purchase_id,
                dispute_id=dispute.dispute_id,
            )
        )
        return dispute

    def _transfer_dispute_win(self, purchase: Purchase, dispute: Dispute, amount_cents: int) -> None:
        # Processor-held accounts get the won funds back as a tagged transfer.
        merchant_account = purchase.merchant_account
        if merchant_account is None or merchant_account.holder_of_funds != HolderOfFunds.STRIPE.value:
            return
        if amount_cents <= 0:
            return
        processor = self.processors.get(purchase.charge_processor_id)
        processor.create_transfer(
            merchant_account, amount_cents, f"Dispute {dispute.charge_processor_dispute_id} won"
        )
