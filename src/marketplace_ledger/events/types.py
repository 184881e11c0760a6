"""Domain event types for ledger operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Serializable for logging and replay

Amounts are integer cents in the named currency.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PURCHASE = "purchase"
    REFUND = "refund"
    DISPUTE = "dispute"
    BALANCE = "balance"
    CREDIT = "credit"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_id: UUID | None  # User that triggered, None for the system
    actor_type: str  # 'user', 'system', 'webhook'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
        actor_type: str = "system",
        source_service: str = "ledger",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Purchase Events
# =============================================================================


@dataclass(frozen=True)
class PurchaseSucceeded(DomainEvent):
    """A purchase was charged and the balances were credited."""

    purchase_id: UUID
    seller_id: UUID
    price_cents: int
    fee_cents: int
    affiliate_credit_cents: int
    total_transaction_cents: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.PURCHASE


@dataclass(frozen=True)
class PurchaseFailed(DomainEvent):
    """A purchase could not be charged."""

    purchase_id: UUID
    seller_id: UUID
    error_code: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PURCHASE


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundIssued(DomainEvent):
    """A purchase was fully or partially refunded."""

    purchase_id: UUID
    refund_id: UUID
    amount_cents: int
    fee_cents: int
    total_transaction_cents: int
    is_partial: bool
    is_for_fraud: bool = False

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class TaxRefundIssued(DomainEvent):
    """Only the platform-collected tax of a purchase was refunded."""

    purchase_id: UUID
    refund_id: UUID
    platform_tax_cents: int
    business_vat_id: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


# =============================================================================
# Dispute Events
# =============================================================================


@dataclass(frozen=True)
class ChargebackRecorded(DomainEvent):
    """The buyer's issuer formalized a dispute."""

    purchase_id: UUID
    dispute_id: UUID
    amount_cents: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class ChargebackReversed(DomainEvent):
    """A dispute was won and the chargeback reversed."""

    purchase_id: UUID
    dispute_id: UUID

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


@dataclass(frozen=True)
class DisputeLost(DomainEvent):
    """A dispute was closed in the buyer's favor."""

    purchase_id: UUID
    dispute_id: UUID

    @property
    def category(self) -> EventCategory:
        return EventCategory.DISPUTE


# =============================================================================
# Balance Events
# =============================================================================


@dataclass(frozen=True)
class BalanceTransactionPosted(DomainEvent):
    """A balance transaction changed a user's balance."""

    balance_transaction_id: UUID
    balance_id: UUID
    user_id: UUID
    issued_currency: str
    issued_net_cents: int
    holding_currency: str
    holding_net_cents: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.BALANCE


@dataclass(frozen=True)
class BalanceStateChanged(DomainEvent):
    """A balance moved through the payout lifecycle."""

    balance_id: UUID
    user_id: UUID
    previous_state: str
    new_state: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.BALANCE


# =============================================================================
# Credit Events
# =============================================================================


@dataclass(frozen=True)
class CreditIssued(DomainEvent):
    """A credit adjusted a user's balance."""

    credit_id: UUID
    user_id: UUID
    amount_cents: int
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.CREDIT
