"""Purchase financial ledger for a digital goods marketplace."""

__version__ = "0.1.0"
