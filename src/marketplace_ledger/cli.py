"""Ledger Command Line Interface.

Provides operational tools for:
- Schema creation
- Fee quotes
- Balance queries
- Metrics emission

Usage:
    python -m marketplace_ledger init-db --database-url sqlite:///ledger.db
    python -m marketplace_ledger fee-quote --price-cents 1000 --discover
    python -m marketplace_ledger balance --user-id X
    python -m marketplace_ledger metrics --format prometheus
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from marketplace_ledger import database
from marketplace_ledger.calculators import FeeCalculator, FeeContext, affiliate_split
from marketplace_ledger.config import LedgerConfig, get_settings
from marketplace_ledger.metrics import LedgerMetricsCollector
from marketplace_ledger.money import USD, format_cents
from marketplace_ledger.services import BalanceService

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class LedgerCli:
    """Ledger Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m marketplace_ledger",
            description="Marketplace ledger operational tools",
        )
        parser.add_argument(
            "--database-url",
            help="Database URL (defaults to DATABASE_URL)",
        )
        parser.add_argument(
            "--log-level",
            help="Log level (defaults to LOG_LEVEL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create the ledger tables",
        )

        # fee-quote command
        quote = subparsers.add_parser(
            "fee-quote",
            help="Show the platform fee and affiliate split for a price",
        )
        quote.add_argument(
            "--price-cents",
            type=int,
            required=True,
            help="Price in USD cents",
        )
        quote.add_argument(
            "--connect",
            action="store_true",
            help="Charge on the seller's connected account",
        )
        quote.add_argument(
            "--discover",
            action="store_true",
            help="Sale was referred by Discover",
        )
        quote.add_argument(
            "--no-mor-fee",
            action="store_true",
            help="Do not charge the merchant of record fee",
        )
        quote.add_argument(
            "--affiliate-bps",
            type=int,
            default=0,
            help="Affiliate cut in basis points",
        )
        quote.add_argument(
            "--json",
            action="store_true",
            help="Print JSON",
        )

        # balance command
        balance = subparsers.add_parser(
            "balance",
            help="Show a user's unpaid balances",
        )
        balance.add_argument(
            "--user-id",
            type=parse_uuid,
            required=True,
            help="User to show balances for",
        )
        balance.add_argument(
            "--merchant-account-id",
            type=parse_uuid,
            help="Only balances held on this merchant account",
        )

        # metrics command
        metrics = subparsers.add_parser(
            "metrics",
            help="Emit ledger metrics",
        )
        metrics.add_argument(
            "--format",
            choices=["prometheus", "json"],
            default="prometheus",
            help="Output format",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        logging.basicConfig(
            level=(parsed.log_level or get_settings().log_level).upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        # Dispatch to command handler
        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "init-db": self._cmd_init_db,
            "fee-quote": self._cmd_fee_quote,
            "balance": self._cmd_balance,
            "metrics": self._cmd_metrics,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            return handler(parsed)
        except SQLAlchemyError as e:
            logger.error("Database error running %s: %s", parsed.command, e)
            print(f"Database error: {e}", file=sys.stderr)
            return 1

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        engine, _ = database.init_db(args.database_url, create_schema=True)
        print(f"Ledger schema ready on {engine.url.render_as_string(hide_password=True)}")
        return 0

    def _cmd_fee_quote(self, args: argparse.Namespace) -> int:
        """Quote the fee for a price."""
        if args.price_cents < 0:
            print("Price must not be negative", file=sys.stderr)
            return 1

        config = LedgerConfig.from_settings(get_settings())
        ctx = FeeContext(
            price_cents=args.price_cents,
            charged_using_platform_merchant_account=not args.connect,
            merchant_of_record_fee=config.merchant_of_record_fee and not args.no_mor_fee,
            charge_discover_fee=args.discover,
        )
        breakdown = FeeCalculator().calculate(ctx)
        split = affiliate_split(
            basis_points=args.affiliate_bps,
            displayed_price_usd_cents=args.price_cents,
            fee_cents=breakdown.fee_cents,
            seller_bears_affiliate_fee=config.sellers_bear_affiliate_fees,
        )
        seller_cents = args.price_cents - breakdown.fee_cents - split.affiliate_credit_cents

        if args.json:
            print(json.dumps({
                "price_cents": args.price_cents,
                "fee_cents": breakdown.fee_cents,
                "fee_per_thousand": breakdown.fee_per_thousand,
                "fixed_fee_cents": breakdown.fixed_fee_cents,
                "was_discover_fee_charged": breakdown.was_discover_fee_charged,
                "affiliate_credit_cents": split.affiliate_credit_cents,
                "seller_cents": seller_cents,
            }, indent=2))
            return 0

        print(f"Price:      {format_cents(USD, args.price_cents):>12}")
        print(f"Fee:        {format_cents(USD, breakdown.fee_cents):>12}  ({breakdown.fee_per_thousand}/1000 + {breakdown.fixed_fee_cents}c)")
        if args.affiliate_bps:
            print(f"Affiliate:  {format_cents(USD, split.affiliate_credit_cents):>12}")
        print(f"Seller:     {format_cents(USD, seller_cents):>12}")
        if breakdown.was_discover_fee_charged:
            print("  Discover fee charged")
        return 0

    def _cmd_balance(self, args: argparse.Namespace) -> int:
        """Show unpaid balances."""
        database.init_db(args.database_url)
        with database.session_scope() as session:
            service = BalanceService(session)
            balances = service.unpaid_balances(args.user_id, args.merchant_account_id)
            print(f"Unpaid balances for user: {args.user_id}")
            if not balances:
                print("  (none)")
            for balance in balances:
                print(
                    f"  {balance.date}  {format_cents(balance.currency, balance.amount_cents):>12}"
                    f"  held {format_cents(balance.holding_currency, balance.holding_amount_cents):>12}"
                    f"  account {balance.merchant_account_id}"
                )
            total = service.unpaid_balance_cents(args.user_id, args.merchant_account_id)
            print(f"\n  Total:    {format_cents(USD, total):>12}")
        return 0

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        database.init_db(args.database_url)
        with database.session_scope() as session:
            metrics = LedgerMetricsCollector(session).collect()
            if args.format == "json":
                print(metrics.to_json())
            else:
                print(metrics.to_prometheus())
        return 0


def main() -> None:
    """Entry point."""
    sys.exit(LedgerCli().run())


if __name__ == "__main__":
    main()
