"""Tests for ledger domain events.

Tests verify:
1. Event types are properly structured and serializable
2. Event emitter routes to correct handlers
3. Event batching holds events until the operation succeeds
4. Handler errors are isolated
"""

import json
from uuid import uuid4

import pytest

from marketplace_ledger.events import (
    BalanceStateChanged,
    CreditIssued,
    EventCategory,
    EventEmitter,
    EventMetadata,
    PurchaseFailed,
    PurchaseSucceeded,
    RecordingHandler,
    RefundIssued,
)
from marketplace_ledger.services import PurchaseError, PurchaseRequest


def _refund_issued(**kwargs) -> RefundIssued:
    kwargs.setdefault("metadata", EventMetadata.create())
    kwargs.setdefault("purchase_id", uuid4())
    kwargs.setdefault("refund_id", uuid4())
    kwargs.setdefault("amount_cents", 100)
    kwargs.setdefault("fee_cents", 93)
    kwargs.setdefault("total_transaction_cents", 100)
    kwargs.setdefault("is_partial", False)
    return RefundIssued(**kwargs)


class TestEventMetadata:
    """Test EventMetadata creation."""

    def test_create_metadata_auto_generates_fields(self):
        meta = EventMetadata.create()

        assert meta.event_id is not None
        assert meta.timestamp is not None
        assert meta.correlation_id is not None
        assert meta.actor_id is None
        assert meta.actor_type == "system"
        assert meta.source_service == "ledger"
        assert meta.version == 1

    def test_create_metadata_with_custom_values(self):
        actor_id = uuid4()
        correlation_id = uuid4()

        meta = EventMetadata.create(
            correlation_id=correlation_id, actor_id=actor_id, actor_type="user", source_service="refunds"
        )

        assert meta.correlation_id == correlation_id
        assert meta.actor_id == actor_id
        assert meta.actor_type == "user"


class TestEventTypes:
    """Test event structure and serialization."""

    def test_refund_issued(self):
        event = _refund_issued(is_partial=True)

        assert event.event_type == "RefundIssued"
        assert event.category == EventCategory.REFUND
        assert event.is_for_fraud is False

    def test_to_dict(self):
        event = _refund_issued()

        data = event.to_dict()

        assert data["event_type"] == "RefundIssued"
        assert data["category"] == "refund"
        assert data["purchase_id"] == str(event.purchase_id)
        assert data["metadata"]["event_id"] == str(event.metadata.event_id)
        assert data["amount_cents"] == 100

    def test_to_json(self):
        event = CreditIssued(
            metadata=EventMetadata.create(), credit_id=uuid4(), user_id=uuid4(), amount_cents=-33, reason="manual"
        )

        assert json.loads(event.to_json())["amount_cents"] == -33

    def test_events_are_immutable(self):
        event = _refund_issued()

        with pytest.raises(AttributeError):
            event.amount_cents = 1


class TestEventEmitter:
    """Test handler routing."""

    def test_on_type(self):
        emitter = EventEmitter()
        refunds = RecordingHandler()
        emitter.on(RefundIssued, refunds)

        emitter.emit(_refund_issued())
        emitter.emit(
            PurchaseFailed(metadata=EventMetadata.create(), purchase_id=uuid4(), seller_id=uuid4(), error_code="x")
        )

        assert [e.event_type for e in refunds.events] == ["RefundIssued"]

    def test_on_category(self):
        emitter = EventEmitter()
        balances = RecordingHandler()
        emitter.on_category(EventCategory.BALANCE, balances)

        emitter.emit(_refund_issued())
        emitter.emit(
            BalanceStateChanged(
                metadata=EventMetadata.create(),
                balance_id=uuid4(),
                user_id=uuid4(),
                previous_state="unpaid",
                new_state="processing",
            )
        )

        assert len(balances.events) == 1

    def test_off(self):
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)
        emitter.off(handler)

        emitter.emit(_refund_issued())

        assert handler.events == []

    def test_handler_errors_are_isolated(self):
        emitter = EventEmitter()
        handler = RecordingHandler()

        def broken(event):
            raise RuntimeError("boom")

        emitter.on_all(broken)
        emitter.on_all(handler)

        errors = emitter.emit(_refund_issued())

        assert len(errors) == 1
        assert len(handler.events) == 1


class TestEventBatch:
    """Test batching around an operation."""

    def test_batch_dispatches_on_exit(self):
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with emitter.batch():
            emitter.emit(_refund_issued())
            assert handler.events == []

        assert len(handler.events) == 1

    def test_batch_discards_on_error(self):
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with pytest.raises(ValueError):
            with emitter.batch():
                emitter.emit(_refund_issued())
                raise ValueError("operation failed")

        assert handler.events == []
        # The emitter is usable again
        emitter.emit(_refund_issued())
        assert len(handler.events) == 1

    def test_batch_collects_handler_errors(self):
        emitter = EventEmitter()

        def broken(event):
            raise RuntimeError("boom")

        emitter.on_all(broken)

        with emitter.batch() as batch:
            emitter.emit(_refund_issued())

        assert len(batch.errors) == 1

    def test_nested_batch_dispatches_with_outer_batch(self):
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with emitter.batch():
            emitter.emit(_refund_issued(amount_cents=1))
            with emitter.batch():
                emitter.emit(_refund_issued(amount_cents=2))
            assert handler.events == []

        assert [e.amount_cents for e in handler.events] == [1, 2]

    def test_failed_inner_batch_keeps_outer_events(self):
        emitter = EventEmitter()
        handler = RecordingHandler()
        emitter.on_all(handler)

        with emitter.batch():
            emitter.emit(_refund_issued(amount_cents=1))
            with pytest.raises(ValueError):
                with emitter.batch():
                    emitter.emit(_refund_issued(amount_cents=2))
                    raise ValueError("operation failed")

        assert [e.amount_cents for e in handler.events] == [1]

    def test_ledger_operations_inside_caller_batch(self, ledger, product, recorder):
        with ledger.emitter.batch():
            purchase = ledger.process_purchase(PurchaseRequest(product=product))
            ledger.refund(purchase, None)
            assert recorder.events == []

        assert len(recorder.of_type(PurchaseSucceeded)) == 1
        assert len(recorder.of_type(RefundIssued)) == 1

    def test_ledger_operation_discarded_with_caller_batch(self, ledger, product, recorder):
        purchase = ledger.process_purchase(PurchaseRequest(product=product))

        with pytest.raises(RuntimeError):
            with ledger.emitter.batch():
                ledger.refund(purchase, None)
                raise RuntimeError("caller failed")

        assert recorder.of_type(RefundIssued) == []

    def test_failed_purchase_event_survives_the_error(self, ledger, stripe, product, recorder):
        """Purchases are not batched, so failures are still published."""
        stripe.decline_next_charge()

        with pytest.raises(PurchaseError):
            ledger.process_purchase(PurchaseRequest(product=product))

        assert recorder.of_type(PurchaseFailed)[0].error_code == "card_declined"
