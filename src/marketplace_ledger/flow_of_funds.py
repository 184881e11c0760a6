"""Flow of funds reported by a charge processor for a money movement.

A charge has positive amounts, refunds and chargebacks negative ones.

- issued_amount: what the card issuer moved.
- settled_amount: what settled in the platform's processor account.
- platform_amount: the platform's portion (application fee on
  connected accounts, everything on platform-held accounts).
- merchant_account_gross_amount / merchant_account_net_amount: amounts in
  the holding currency of a platform-managed seller account, when the
  processor reports them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Amount:
    """An amount of money in a currency's smallest unit."""

    currency: str
    cents: int

    def negated(self) -> Amount:
        return Amount(self.currency, -self.cents)

    def to_dict(self) -> dict[str, Any]:
        return {"currency": self.currency, "cents": self.cents}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Amount:
        return cls(currency=data["currency"], cents=int(data["cents"]))


@dataclass(frozen=True)
class FlowOfFunds:
    """Amounts moved by a single processor operation."""

    issued_amount: Amount
    settled_amount: Amount
    platform_amount: Amount
    merchant_account_gross_amount: Amount | None = None
    merchant_account_net_amount: Amount | None = None

    @classmethod
    def build_simple(cls, currency: str, cents: int) -> FlowOfFunds:
        """Flow of funds where issuer, settlement and platform amounts agree."""
        amount = Amount(currency, cents)
        return cls(issued_amount=amount, settled_amount=amount, platform_amount=amount)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "issued_amount": self.issued_amount.to_dict(),
            "settled_amount": self.settled_amount.to_dict(),
            "platform_amount": self.platform_amount.to_dict(),
        }
        if self.merchant_account_gross_amount is not None:
            data["merchant_account_gross_amount"] = self.merchant_account_gross_amount.to_dict()
        if self.merchant_account_net_amount is not None:
            data["merchant_account_net_amount"] = self.merchant_account_net_amount.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowOfFunds:
        gross = data.get("merchant_account_gross_amount")
        net = data.get("merchant_account_net_amount")
        return cls(
            issued_amount=Amount.from_dict(data["issued_amount"]),
            settled_amount=Amount.from_dict(data["settled_amount"]),
            platform_amount=Amount.from_dict(data["platform_amount"]),
            merchant_account_gross_amount=Amount.from_dict(gross) if gross else None,
            merchant_account_net_amount=Amount.from_dict(net) if net else None,
        )
