"""Refund amount and balance decrement calculation.

Pure functions over a PurchaseAmounts snapshot. Tax and fee shares of a
partial refund are floored so that rounding never refunds more than was
collected; the last refund of a partially refunded purchase takes the
remainder of every component.
"""

from __future__ import annotations

from decimal import Decimal

from marketplace_ledger.calculators.types import BalanceDecrement, PurchaseAmounts, RefundAmounts
from marketplace_ledger.money import ceil_cents, floor_cents

_BASIS_POINTS = Decimal("10000")


class RefundCalculator:
    """Builds refunds and balance decrements for one purchase."""

    def __init__(self, amounts: PurchaseAmounts):
        self.amounts = amounts

    def build_refund(
        self,
        gross_refund_cents: int | None = None,
        *,
        partially_refunded_previously: bool = False,
        fully_refunded_now: bool = False,
    ) -> RefundAmounts | None:
        """Pick the refund shape for a processor refund of ``gross_refund_cents``.

        Returns:
            RefundAmounts, or None when the amount cannot be refunded
        """
        if partially_refunded_previously and fully_refunded_now:
            return self.build_partial_full_refund()
        if gross_refund_cents == self.amounts.total_transaction_cents:
            return self.build_full_refund()
        if gross_refund_cents is None:
            gross_refund_cents = self.amounts.gross_amount_refundable_cents
        return self.build_partial_refund(gross_refund_cents)

    def build_full_refund(self) -> RefundAmounts:
        a = self.amounts
        return RefundAmounts(
            total_transaction_cents=a.total_transaction_cents,
            amount_cents=a.price_cents,
            fee_cents=a.fee_cents,
            creator_tax_cents=a.tax_cents,
            platform_tax_cents=a.platform_tax_refundable_cents,
        )

    def build_partial_full_refund(self) -> RefundAmounts | None:
        """Refund whatever is left after earlier partial refunds."""
        a = self.amounts
        refunded = a.refunded
        remaining = RefundAmounts(
            total_transaction_cents=a.total_transaction_cents - refunded.total_transaction_cents,
            amount_cents=a.price_cents - refunded.amount_cents,
            fee_cents=a.fee_cents - refunded.fee_cents,
            creator_tax_cents=a.tax_cents - refunded.creator_tax_cents,
            platform_tax_cents=a.platform_tax_cents - refunded.platform_tax_cents,
        )
        if remaining.total_transaction_cents < 0 or remaining.amount_cents < 0:
            return None
        return remaining

    def build_partial_refund(self, gross_refund_cents: int) -> RefundAmounts | None:
        a = self.amounts
        if gross_refund_cents <= 0 or gross_refund_cents > a.gross_amount_refundable_cents:
            return None

        creator_tax_refunded = 0
        platform_tax_refunded = 0
        refund_amount_cents = gross_refund_cents

        if a.platform_responsible_for_tax and a.platform_tax_refundable_cents > 0:
            proportional = floor_cents(
                Decimal(gross_refund_cents) * a.platform_tax_cents / a.total_transaction_cents
            )
            # Tax may have been refunded on its own already.
            platform_tax_refunded = min(proportional, a.platform_tax_refundable_cents)
            refund_amount_cents = gross_refund_cents - platform_tax_refunded

        if a.seller_responsible_for_tax:
            creator_tax_refunded = floor_cents(
                Decimal(gross_refund_cents) * a.tax_cents / a.total_transaction_cents
            )

        fee_refunded = floor_cents(Decimal(a.fee_cents) / a.price_cents * refund_amount_cents)

        return RefundAmounts(
            total_transaction_cents=gross_refund_cents,
            amount_cents=refund_amount_cents,
            fee_cents=fee_refunded,
            creator_tax_cents=creator_tax_refunded,
            platform_tax_cents=platform_tax_refunded,
        )

    def gross_refund_for_amount(self, amount_cents: int) -> int:
        """Gross processor refund for refunding ``amount_cents`` of the price.

        Platform-collected tax is refunded proportionally on top, limited to
        what is left of it.
        """
        a = self.amounts
        if not a.platform_responsible_for_tax:
            return amount_cents
        proportional_tax = floor_cents(Decimal(amount_cents) * a.platform_tax_cents / a.price_cents)
        return amount_cents + min(proportional_tax, a.platform_tax_refundable_cents)

    def balance_decrement(
        self,
        *,
        refund: RefundAmounts | None = None,
        is_dispute: bool = False,
        is_partially_refunded: bool = False,
    ) -> BalanceDecrement:
        """Split a refund or chargeback between the seller and the affiliate.

        Args:
            refund: The refund being applied (None for a chargeback)
            is_dispute: True for a chargeback
            is_partially_refunded: Purchase flag after this operation

        Returns:
            BalanceDecrement with positive amounts to take out of each balance
        """
        a = self.amounts
        whole = (is_dispute and not is_partially_refunded) or (
            refund is not None and refund.amount_cents in (a.price_cents, a.total_transaction_cents)
        )
        if whole:
            return BalanceDecrement(
                seller_cents=a.payment_cents - a.affiliate_credit_cents,
                affiliate_cents=a.affiliate_credit_cents,
                affiliate_fee_cents=a.affiliate_fee_cents,
            )

        if is_dispute:
            decrement_cents = a.amount_refundable_cents
            refunded_fee_cents = floor_cents(Decimal(a.fee_cents) / a.price_cents * decrement_cents)
        elif refund is not None:
            decrement_cents = refund.amount_cents
            refunded_fee_cents = refund.fee_cents
        else:
            raise ValueError("A balance decrement needs a refund or a dispute")

        seller_cents = decrement_cents - refunded_fee_cents
        if a.affiliate_credit_cents == 0:
            return BalanceDecrement(seller_cents=seller_cents)

        # The affiliate cut is taken from the price, not from the seller's net.
        cut = Decimal(a.affiliate_basis_points) / _BASIS_POINTS
        affiliate_fee_cents = 0 if a.affiliate_fee_cents == 0 else floor_cents(cut * refunded_fee_cents)
        affiliate_cents = ceil_cents(cut * decrement_cents) - affiliate_fee_cents
        return BalanceDecrement(
            seller_cents=seller_cents - affiliate_cents - affiliate_fee_cents,
            affiliate_cents=affiliate_cents,
            affiliate_fee_cents=affiliate_fee_cents,
        )
