"""Platform fee and affiliate split calculation.

Fees are expressed per thousand of the USD price and rounded half up to
whole cents. On platform-managed merchant accounts the fee also covers the
processor's 2.9% + 30c.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from marketplace_ledger.calculators.types import AffiliateSplit, FeeBreakdown, FeeContext
from marketplace_ledger.money import floor_cents, round_half_up

logger = logging.getLogger(__name__)

PLATFORM_FEE_PER_THOUSAND = 85
PLATFORM_DISCOVER_EXTRA_FEE_PER_THOUSAND = 100
PLATFORM_NON_PRO_FEE_PER_THOUSAND = 60
PLATFORM_FLAT_FEE_PER_THOUSAND = 100
PLATFORM_DISCOVER_FEE_PER_THOUSAND = 300
PLATFORM_FIXED_FEE_CENTS = 50

PROCESSOR_FEE_PER_THOUSAND = 29
PROCESSOR_FIXED_FEE_CENTS = 30

_THOUSAND = Decimal("1000")
_BASIS_POINTS = Decimal("10000")


class FeeCalculator:
    """Calculates the platform fee for a purchase.

    Stateless; one instance can be shared.
    """

    def calculate(self, ctx: FeeContext) -> FeeBreakdown:
        """Calculate the fee for a purchase price.

        Args:
            ctx: Price and everything about the seller, merchant account,
                subscription and discover referral that affects the fee

        Returns:
            FeeBreakdown with the fee and whether a discover fee was charged
        """
        if ctx.price_cents == 0 or ctx.is_brazilian_connect_account:
            return FeeBreakdown.zero()

        fee_per_thousand = self.platform_fee_per_thousand(ctx)

        was_discover_fee_charged = False
        if ctx.charge_discover_fee:
            discover_fee_per_thousand = self.additional_discover_fee_per_thousand(ctx)
            if discover_fee_per_thousand > 0:
                fee_per_thousand += discover_fee_per_thousand
                was_discover_fee_charged = True

        variable_fee_cents = round_half_up(Decimal(ctx.price_cents) * fee_per_thousand / _THOUSAND)
        fixed_fee_cents = self.fixed_fee_cents(ctx, was_discover_fee_charged)

        return FeeBreakdown(
            fee_cents=variable_fee_cents + fixed_fee_cents,
            fee_per_thousand=fee_per_thousand,
            variable_fee_cents=variable_fee_cents,
            fixed_fee_cents=fixed_fee_cents,
            was_discover_fee_charged=was_discover_fee_charged,
        )

    def platform_fee_per_thousand(self, ctx: FeeContext) -> int:
        if ctx.flat_fee_applicable:
            processor_fee = PROCESSOR_FEE_PER_THOUSAND if ctx.charged_using_platform_merchant_account else 0
            return self._flat_fee_per_thousand(ctx) + processor_fee
        if ctx.tier_fee is not None:
            return round_half_up(ctx.tier_fee * _THOUSAND)
        if ctx.charged_using_platform_merchant_account:
            return PLATFORM_FEE_PER_THOUSAND
        return PLATFORM_NON_PRO_FEE_PER_THOUSAND

    def additional_discover_fee_per_thousand(self, ctx: FeeContext) -> int:
        """Discover fee on top of the regular fee, already net of the flat fee."""
        flat_discount = PLATFORM_DISCOVER_EXTRA_FEE_PER_THOUSAND if ctx.flat_fee_applicable else 0

        if ctx.is_recurring_subscription_charge or ctx.is_updated_original_subscription_purchase:
            processor_discount = (
                PROCESSOR_FEE_PER_THOUSAND
                if ctx.subscription_mor_fee_applicable and ctx.charged_using_platform_merchant_account
                else 0
            )
            return ctx.original_discover_fee_per_thousand - flat_discount - processor_discount

        if ctx.is_preorder_charge:
            discount = (
                PLATFORM_DISCOVER_EXTRA_FEE_PER_THOUSAND + PROCESSOR_FEE_PER_THOUSAND
                if ctx.flat_fee_applicable
                else 0
            )
            return ctx.original_discover_fee_per_thousand - discount

        if ctx.merchant_of_record_fee:
            processor_discount = PROCESSOR_FEE_PER_THOUSAND if ctx.charged_using_platform_merchant_account else 0
            return (
                PLATFORM_DISCOVER_FEE_PER_THOUSAND
                - PLATFORM_DISCOVER_EXTRA_FEE_PER_THOUSAND
                - processor_discount
            )

        return ctx.product_discover_fee_per_thousand - flat_discount

    def fixed_fee_cents(self, ctx: FeeContext, was_discover_fee_charged: bool) -> int:
        processor_fixed = PROCESSOR_FIXED_FEE_CENTS if ctx.charged_using_platform_merchant_account else 0

        if ctx.is_recurring_subscription_charge:
            mor_fee_applies = ctx.subscription_mor_fee_applicable
        else:
            mor_fee_applies = ctx.merchant_of_record_fee

        if not mor_fee_applies:
            return processor_fixed
        if was_discover_fee_charged:
            return 0
        return PLATFORM_FIXED_FEE_CENTS + processor_fixed

    @staticmethod
    def _flat_fee_per_thousand(ctx: FeeContext) -> int:
        waived = (
            ctx.waive_platform_fee_on_new_sales
            and not ctx.has_subscription
            and not ctx.is_preorder_charge
        )
        return 0 if waived else PLATFORM_FLAT_FEE_PER_THOUSAND


def affiliate_split(
    *,
    basis_points: int,
    displayed_price_usd_cents: int,
    fee_cents: int | None,
    is_collaborator: bool = False,
    seller_bears_affiliate_fee: bool = False,
) -> AffiliateSplit:
    """Split the affiliate's share out of a sale.

    The affiliate receives their cut of the displayed price minus the same
    cut of the platform fee, unless the seller bears the affiliate's share
    of the fee (never for collaborators).

    Args:
        basis_points: Affiliate cut in basis points (1500 = 15%)
        displayed_price_usd_cents: Displayed price converted to USD cents
        fee_cents: Platform fee of the purchase, None if not calculated yet
        is_collaborator: Collaborators always share the fee
        seller_bears_affiliate_fee: Seller or platform-wide setting

    Returns:
        AffiliateSplit with the credit (floored) and the affiliate's
        share of the fee
    """
    cut = Decimal(basis_points) / _BASIS_POINTS

    if fee_cents is None or (not is_collaborator and seller_bears_affiliate_fee):
        affiliate_fee = Decimal("0")
    else:
        affiliate_fee = cut * fee_cents

    credit = floor_cents(cut * displayed_price_usd_cents - affiliate_fee)
    if credit < 0:
        logger.warning(
            "Affiliate credit would be negative (%s bps, price %s, fee %s); using 0",
            basis_points,
            displayed_price_usd_cents,
            fee_cents,
        )
        credit = 0
    return AffiliateSplit(affiliate_credit_cents=credit, affiliate_fee=affiliate_fee, basis_points=basis_points)
