"""Ledger observability metrics.

Metric categories:
- Purchase metrics: successful and failed purchases, gross volume, fees
- Refund metrics: refunds, refunded amounts, retained processor fees
- Dispute metrics: chargebacks and reversals
- Balance metrics: unpaid balances by currency, negative balances

Usage:
    collector = LedgerMetricsCollector(session)
    metrics = collector.collect()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marketplace_ledger.models import Balance, Dispute, Purchase, Refund
from marketplace_ledger.services.state_machine import BalanceState, PurchaseState


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int | Decimal
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


Metric = Counter | Gauge


@dataclass
class LedgerMetrics:
    """Collection of all ledger metrics."""

    # Purchase metrics
    purchases_successful: Counter
    purchases_failed: Counter
    purchases_gross_cents: Counter
    purchases_fee_cents: Counter
    affiliate_credit_cents: Counter

    # Refund metrics
    refunds_total: Counter
    refunds_amount_cents: Counter
    refunds_retained_fee_cents: Counter

    # Dispute metrics
    chargebacks_total: Counter
    chargebacks_reversed: Counter

    # Balance metrics
    unpaid_balance_cents: list[Gauge]
    negative_balances: Gauge

    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def metrics(self) -> list[Metric]:
        result: list[Metric] = []
        for value in vars(self).values():
            if isinstance(value, list):
                result.extend(value)
            elif isinstance(value, (Counter, Gauge)):
                result.append(value)
        return result

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {"collected_at": self.collected_at.isoformat()}
        for name, value in vars(self).items():
            if isinstance(value, list):
                result[name] = [self._metric_to_dict(m) for m in value]
            elif isinstance(value, (Counter, Gauge)):
                result[name] = self._metric_to_dict(value)
        return result

    @staticmethod
    def _metric_to_dict(metric: Metric) -> dict[str, Any]:
        """Convert single metric to dict."""
        return {
            "name": metric.name,
            "value": float(metric.value) if isinstance(metric.value, Decimal) else metric.value,
            "labels": metric.labels,
            "help": metric.help_text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        for metric in self.metrics():
            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"

            value = float(metric.value) if isinstance(metric.value, Decimal) else metric.value

            # HELP and TYPE once per metric name
            if metric.name not in described:
                described.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
            lines.append(f"{metric.name}{labels} {value}")

        return "\n".join(lines)


class LedgerMetricsCollector:
    """Collects metrics from the database."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def collect(self) -> LedgerMetrics:
        """Collect all metrics."""
        return LedgerMetrics(
            # Purchases
            purchases_successful=self._count_purchases(PurchaseState.SUCCESSFUL),
            purchases_failed=self._count_purchases(PurchaseState.FAILED),
            purchases_gross_cents=self._sum_successful(
                Purchase.total_transaction_cents,
                "ledger_purchases_gross_cents_total",
                "Total charged to buyers in USD cents",
            ),
            purchases_fee_cents=self._sum_successful(
                Purchase.fee_cents, "ledger_purchases_fee_cents_total", "Total platform fees in USD cents"
            ),
            affiliate_credit_cents=self._sum_successful(
                Purchase.affiliate_credit_cents,
                "ledger_affiliate_credit_cents_total",
                "Total affiliate credits in USD cents",
            ),
            # Refunds
            refunds_total=self._counter(
                select(func.count(Refund.refund_id)), "ledger_refunds_total", "Total refunds"
            ),
            refunds_amount_cents=self._counter(
                select(func.coalesce(func.sum(Refund.total_transaction_cents), 0)),
                "ledger_refunds_amount_cents_total",
                "Total refunded to buyers in USD cents",
            ),
            refunds_retained_fee_cents=self._counter(
                select(func.coalesce(func.sum(Refund.retained_fee_cents), 0)),
                "ledger_refunds_retained_fee_cents_total",
                "Processor fees retained from sellers on refunds",
            ),
            # Disputes
            chargebacks_total=self._counter(
                select(func.count(Dispute.dispute_id)), "ledger_chargebacks_total", "Total chargebacks"
            ),
            chargebacks_reversed=self._counter(
                select(func.count(Purchase.purchase_id)).where(
                    Purchase.chargeback_date.is_not(None), Purchase.chargeback_reversed.is_(True)
                ),
                "ledger_chargebacks_reversed_total",
                "Chargebacks reversed after a won dispute",
            ),
            # Balances
            unpaid_balance_cents=self._gauge_unpaid_balances(),
            negative_balances=self._gauge_negative_balances(),
        )

    def _counter(self, stmt, name: str, help_text: str) -> Counter:
        return Counter(name=name, value=int(self._session.scalar(stmt) or 0), help_text=help_text)

    def _count_purchases(self, state: PurchaseState) -> Counter:
        """Count purchases in a state."""
        return self._counter(
            select(func.count(Purchase.purchase_id)).where(Purchase.purchase_state == state.value),
            f"ledger_purchases_{state.value}_total",
            f"Total {state.value} purchases",
        )

    def _sum_successful(self, column, name: str, help_text: str) -> Counter:
        return self._counter(
            select(func.coalesce(func.sum(column), 0)).where(
                Purchase.purchase_state == PurchaseState.SUCCESSFUL.value
            ),
            name,
            help_text,
        )

    def _gauge_unpaid_balances(self) -> list[Gauge]:
        """Unpaid balances by holding currency."""
        rows = self._session.execute(
            select(Balance.holding_currency, func.sum(Balance.holding_amount_cents))
            .where(Balance.state == BalanceState.UNPAID.value)
            .group_by(Balance.holding_currency)
            .order_by(Balance.holding_currency)
        ).all()
        return [
            Gauge(
                name="ledger_unpaid_balance_cents",
                value=int(total or 0),
                labels={"currency": currency},
                help_text="Unpaid balances in the holding currency",
            )
            for currency, total in rows
        ]

    def _gauge_negative_balances(self) -> Gauge:
        """Unpaid balances below zero (sellers owing the platform)."""
        count = self._session.scalar(
            select(func.count(Balance.balance_id)).where(
                Balance.state == BalanceState.UNPAID.value, Balance.amount_cents < 0
            )
        )
        return Gauge(
            name="ledger_negative_balances",
            value=int(count or 0),
            help_text="Unpaid balances with a negative amount",
        )
