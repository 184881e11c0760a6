"""Ledger services package."""

from marketplace_ledger.services.state_machine import (
    BalanceState,
    BalanceStateMachine,
    DisputeState,
    DisputeStateMachine,
    InvalidTransitionError,
    PurchaseState,
    PurchaseStateMachine,
)
from marketplace_ledger.services.balance_service import (
    BalanceAmounts,
    BalanceCouldNotBeFoundOrCreated,
    BalanceService,
    BalanceStateError,
)
from marketplace_ledger.services.credit_service import CreditService
from marketplace_ledger.services.purchase_service import (
    PurchaseError,
    PurchaseErrorCode,
    PurchaseRequest,
    PurchaseService,
)
from marketplace_ledger.services.refund_service import RefundResult, RefundService
from marketplace_ledger.services.dispute_service import DisputeService

__all__ = [
    # State machines
    "BalanceState",
    "BalanceStateMachine",
    "DisputeState",
    "DisputeStateMachine",
    "InvalidTransitionError",
    "PurchaseState",
    "PurchaseStateMachine",
    # Balances
    "BalanceAmounts",
    "BalanceCouldNotBeFoundOrCreated",
    "BalanceService",
    "BalanceStateError",
    # Credits
    "CreditService",
    # Purchases
    "PurchaseError",
    "PurchaseErrorCode",
    "PurchaseRequest",
    "PurchaseService",
    # Refunds
    "RefundResult",
    "RefundService",
    # Disputes
    "DisputeService",
]
