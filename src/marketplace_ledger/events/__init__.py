"""Ledger domain events.

This package provides:
- Typed domain events for purchases, refunds, disputes, balances and credits
- A synchronous event emitter with transactional batching
"""

from marketplace_ledger.events.types import (
    # Base
    DomainEvent,
    EventMetadata,
    EventCategory,
    # Purchase Events
    PurchaseSucceeded,
    PurchaseFailed,
    # Refund Events
    RefundIssued,
    TaxRefundIssued,
    # Dispute Events
    ChargebackRecorded,
    ChargebackReversed,
    DisputeLost,
    # Balance Events
    BalanceTransactionPosted,
    BalanceStateChanged,
    # Credit Events
    CreditIssued,
)
from marketplace_ledger.events.emitter import (
    EventBatch,
    EventEmitter,
    EventHandler,
    RecordingHandler,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    # Purchase Events
    "PurchaseSucceeded",
    "PurchaseFailed",
    # Refund Events
    "RefundIssued",
    "TaxRefundIssued",
    # Dispute Events
    "ChargebackRecorded",
    "ChargebackReversed",
    "DisputeLost",
    # Balance Events
    "BalanceTransactionPosted",
    "BalanceStateChanged",
    # Credit Events
    "CreditIssued",
    # Emitter
    "EventBatch",
    "EventEmitter",
    "EventHandler",
    "RecordingHandler",
]
