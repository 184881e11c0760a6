"""Tests for ledger metrics collection."""

import json

import pytest

from marketplace_ledger.metrics import LedgerMetricsCollector
from marketplace_ledger.services import PurchaseError, PurchaseRequest


@pytest.fixture
def sales(ledger, stripe, product):
    """One successful and one declined purchase."""
    purchase = ledger.process_purchase(PurchaseRequest(product=product))
    stripe.decline_next_charge()
    with pytest.raises(PurchaseError):
        ledger.process_purchase(PurchaseRequest(product=product))
    return purchase


class TestLedgerMetricsCollector:
    """Test metrics gathered from the database."""

    def test_empty_ledger(self, session):
        metrics = LedgerMetricsCollector(session).collect()

        assert metrics.purchases_successful.value == 0
        assert metrics.unpaid_balance_cents == []
        assert metrics.negative_balances.value == 0

    def test_purchases(self, session, sales):
        metrics = LedgerMetricsCollector(session).collect()

        assert metrics.purchases_successful.value == 1
        assert metrics.purchases_failed.value == 1
        assert metrics.purchases_gross_cents.value == 100
        assert metrics.purchases_fee_cents.value == 93

    def test_refunds_and_negative_balances(self, session, ledger, sales):
        ledger.refund(sales, None)

        metrics = LedgerMetricsCollector(session).collect()

        assert metrics.refunds_total.value == 1
        assert metrics.refunds_amount_cents.value == 100
        assert metrics.refunds_retained_fee_cents.value == 33
        assert metrics.negative_balances.value == 1

    def test_prometheus_format(self, session, sales):
        output = LedgerMetricsCollector(session).collect().to_prometheus()

        assert "# TYPE ledger_purchases_successful_total counter" in output
        assert "ledger_purchases_successful_total 1" in output
        assert "ledger_purchases_failed_total 1" in output
        assert 'ledger_unpaid_balance_cents{currency="usd"} 7' in output

    def test_json_format(self, session, sales):
        data = json.loads(LedgerMetricsCollector(session).collect().to_json())

        assert data["purchases_successful"]["value"] == 1
        assert data["unpaid_balance_cents"][0]["labels"] == {"currency": "usd"}
        assert "collected_at" in data
