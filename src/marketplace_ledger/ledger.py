"""PurchaseLedger facade - one entry point for money operations.

Usage:
    ledger = PurchaseLedger(session, config, processors)

    # Charge a buyer and credit the seller and affiliate
    purchase = ledger.process_purchase(PurchaseRequest(product=product, ...))

    # Refund it, fully or in part
    result = ledger.refund(purchase, refunding_user_id, amount="5.00")

    # Processor webhooks
    ledger.record_chargeback(purchase, formalized_at, "du_123")
    ledger.record_dispute_won(purchase, won_at)

The facade:
- Wires the services together around one session and emitter
- Dispatches domain events only when the operation succeeded
- Leaves committing to the caller
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.events import EventEmitter
from marketplace_ledger.flow_of_funds import FlowOfFunds
from marketplace_ledger.models import Balance, Credit, Dispute, Purchase, User
from marketplace_ledger.processors import ChargeProcessorRegistry
from marketplace_ledger.services import (
    BalanceService,
    CreditService,
    DisputeService,
    PurchaseRequest,
    PurchaseService,
    RefundResult,
    RefundService,
)


class PurchaseLedger:
    """Synchronous ledger facade."""

    def __init__(
        self,
        session: Session,
        config: LedgerConfig | None = None,
        processors: ChargeProcessorRegistry | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._session = session
        self._config = config or LedgerConfig()
        self._processors = processors or ChargeProcessorRegistry()
        self._emitter = emitter or EventEmitter()

        # Wire up services
        self.balances = BalanceService(session, self._emitter, max_attempts=self._config.balance_update_attempts)
        self.credits = CreditService(session, self.balances, self._processors, self._config)
        self.purchases = PurchaseService(session, self._config, self._processors, self.balances, self._emitter)
        self.refunds = RefundService(
            session, self._config, self._processors, self.balances, self.credits, self._emitter
        )
        self.disputes = DisputeService(
            session, self._processors, self.balances, self.credits, self.refunds, self._emitter
        )

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    # --- purchases -----------------------------------------------------------

    def process_purchase(self, request: PurchaseRequest) -> Purchase:
        """Charge and record a purchase.

        Not batched, so a PurchaseFailed event reaches handlers even though
        the call raises.

        Raises:
            PurchaseError: the purchase failed
        """
        return self.purchases.process(request)

    # --- refunds ---------------------------------------------------------------

    def refund(
        self,
        purchase: Purchase,
        refunding_user_id: UUID | None,
        amount: Decimal | str | None = None,
    ) -> RefundResult:
        with self._emitter.batch():
            return self.refunds.refund(purchase, refunding_user_id, amount)

    def refund_taxes(
        self,
        purchase: Purchase,
        refunding_user_id: UUID | None,
        note: str | None = None,
        business_vat_id: str | None = None,
    ) -> RefundResult:
        with self._emitter.batch():
            return self.refunds.refund_platform_taxes(purchase, refunding_user_id, note, business_vat_id)

    def refund_for_fraud(self, purchase: Purchase, refunding_user_id: UUID | None) -> RefundResult:
        with self._emitter.batch():
            return self.refunds.refund_for_fraud(purchase, refunding_user_id)

    # --- disputes ----------------------------------------------------------------

    def record_chargeback(
        self,
        purchase: Purchase,
        formalized_at: datetime,
        processor_dispute_id: str | None = None,
        flow_of_funds: FlowOfFunds | None = None,
    ) -> Dispute | None:
        with self._emitter.batch():
            return self.disputes.handle_dispute_formalized(purchase, formalized_at, processor_dispute_id, flow_of_funds)

    def record_dispute_won(self, purchase: Purchase, won_at: datetime) -> Dispute | None:
        with self._emitter.batch():
            return self.disputes.handle_dispute_won(purchase, won_at)

    def record_dispute_lost(self, purchase: Purchase, lost_at: datetime) -> Dispute | None:
        with self._emitter.batch():
            return self.disputes.handle_dispute_lost(purchase, lost_at)

    # --- balances ------------------------------------------------------------------

    def credit(self, user: User, amount_cents: int, crediting_user_id: UUID | None = None) -> Credit:
        with self._emitter.batch():
            return self.credits.create_for_credit(user, amount_cents, crediting_user_id)

    def forfeit_balance(self, balance: Balance, crediting_user_id: UUID | None = None) -> Credit | None:
        with self._emitter.batch():
            return self.credits.create_for_balance_forfeit(balance, crediting_user_id)

    def unpaid_balance_cents(self, user_id: UUID, merchant_account_id: UUID | None = None) -> int:
        return self.balances.unpaid_balance_cents(user_id, merchant_account_id)
