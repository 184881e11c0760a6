"""SQLAlchemy ORM models for the marketplace ledger."""

from marketplace_ledger.models.base import Base, TimestampMixin, utcnow
from marketplace_ledger.models.accounts import (
    Affiliate,
    ChargeProcessorId,
    HolderOfFunds,
    MerchantAccount,
    ProductAffiliate,
    User,
    get_platform_merchant_account,
)
from marketplace_ledger.models.catalog import Product, Subscription, ZipTaxRate
from marketplace_ledger.models.purchase import (
    AffiliateCredit,
    AffiliatePartialRefund,
    Dispute,
    Purchase,
    Refund,
)
from marketplace_ledger.models.balance import Balance, BalanceTransaction, Credit

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "utcnow",
    # Accounts
    "User",
    "MerchantAccount",
    "ChargeProcessorId",
    "HolderOfFunds",
    "Affiliate",
    "ProductAffiliate",
    "get_platform_merchant_account",
    # Catalog
    "Product",
    "Subscription",
    "ZipTaxRate",
    # Purchases
    "Purchase",
    "Refund",
    "Dispute",
    "AffiliateCredit",
    "AffiliatePartialRefund",
    # Balances
    "Balance",
    "BalanceTransaction",
    "Credit",
]
