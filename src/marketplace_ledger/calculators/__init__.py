"""Pure money calculations for purchases and refunds.

The sales tax calculator needs a database session and lives in
``marketplace_ledger.calculators.tax_calculator``.
"""

from marketplace_ledger.calculators.types import (
    AffiliateSplit,
    BalanceDecrement,
    FeeBreakdown,
    FeeContext,
    PurchaseAmounts,
    RefundAmounts,
    SalesTaxCalculation,
)
from marketplace_ledger.calculators.fee_calculator import FeeCalculator, affiliate_split
from marketplace_ledger.calculators.refund_calculator import RefundCalculator

__all__ = [
    "AffiliateSplit",
    "BalanceDecrement",
    "FeeBreakdown",
    "FeeContext",
    "PurchaseAmounts",
    "RefundAmounts",
    "SalesTaxCalculation",
    "FeeCalculator",
    "affiliate_split",
    "RefundCalculator",
]
