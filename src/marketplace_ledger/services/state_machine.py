"""Purchase, balance and dispute state machines with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from marketplace_ledger.models import Balance, Purchase


class PurchaseState(str, Enum):
    """Purchase state values."""

    IN_PROGRESS = "in_progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    NOT_CHARGED = "not_charged"


class BalanceState(str, Enum):
    """Balance state values."""

    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    FORFEITED = "forfeited"


class DisputeState(str, Enum):
    """Dispute state values."""

    FORMALIZED = "formalized"
    WON = "won"
    LOST = "lost"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class _StateMachine:
    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


class PurchaseStateMachine(_StateMachine):
    """State machine for purchase states.

    Allowed transitions:
    - in_progress → successful
    - in_progress → failed
    - in_progress → not_charged (free trials)
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PurchaseState.IN_PROGRESS: [
            PurchaseState.SUCCESSFUL,
            PurchaseState.FAILED,
            PurchaseState.NOT_CHARGED,
        ],
        PurchaseState.SUCCESSFUL: [],
        PurchaseState.FAILED: [],
        PurchaseState.NOT_CHARGED: [],
    }

    @classmethod
    def transition(cls, purchase: Purchase, to_status: PurchaseState) -> None:
        cls.validate_transition(purchase.purchase_state, to_status)
        purchase.purchase_state = to_status.value


class BalanceStateMachine(_StateMachine):
    """State machine for payout balances.

    Allowed transitions:
    - unpaid → processing (payout started)
    - processing → paid
    - processing → unpaid (payout failed)
    - unpaid → forfeited
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        BalanceState.UNPAID: [BalanceState.PROCESSING, BalanceState.FORFEITED],
        BalanceState.PROCESSING: [BalanceState.PAID, BalanceState.UNPAID],
        BalanceState.PAID: [],  # Terminal state
        BalanceState.FORFEITED: [],  # Terminal state
    }

    # Only these balances may have their amounts changed
    AMOUNTS_MUTABLE = {BalanceState.UNPAID}

    @classmethod
    def can_change_amounts(cls, status: str) -> bool:
        return status in cls.AMOUNTS_MUTABLE

    @classmethod
    def transition(cls, balance: Balance, to_status: BalanceState) -> str:
        """Move a balance to ``to_status``. Returns the previous state."""
        previous = balance.state
        cls.validate_transition(previous, to_status)
        balance.state = to_status.value
        return previous


class DisputeStateMachine(_StateMachine):
    """State machine for disputes.

    Allowed transitions:
    - formalized → won
    - formalized → lost
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        DisputeState.FORMALIZED: [DisputeState.WON, DisputeState.LOST],
        DisputeState.WON: [],
        DisputeState.LOST: [],
    }
