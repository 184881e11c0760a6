"""Tests for sales tax and VAT calculation."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace_ledger.calculators.tax_calculator import (
    FormatVatIdValidator,
    SalesTaxCalculator,
    SalesTaxCalculatorValidationError,
)
from marketplace_ledger.config import LedgerConfig


def _calculate(session, product, config=None, price_cents=1000, **location):
    return SalesTaxCalculator(
        session,
        config or LedgerConfig(),
        product=product,
        price_cents=price_cents,
        buyer_location=location,
        buyer_vat_id=location.pop("vat_id", None),
    ).calculate()


class TestSalesTaxCalculator:
    """Test rate lookup and eligibility."""

    def test_eu_vat(self, session, product, german_vat):
        calculation = _calculate(session, product, country="DE")

        assert calculation.zip_tax_rate is german_vat
        assert calculation.tax_cents == Decimal("190")
        assert calculation.tax_rate == Decimal("0.19")

    def test_zero_price(self, session, product, german_vat):
        calculation = _calculate(session, product, price_cents=0, country="DE")

        assert calculation.tax_cents == 0
        assert calculation.zip_tax_rate is None

    def test_valid_business_vat_id(self, session, product, german_vat):
        """Businesses with a valid VAT id pay no VAT."""
        calculation = _calculate(session, product, country="DE", vat_id="DE123456789")

        assert calculation.tax_cents == 0
        assert calculation.business_vat_status == "valid"

    def test_epublication_rate(self, session, make_product, seller, make_tax_rate, german_vat):
        ebook_rate = make_tax_rate("DE", "0.07", is_epublication_rate=True)
        ebook = make_product(seller, is_epublication=True)

        calculation = _calculate(session, ebook, country="DE")

        assert calculation.zip_tax_rate is ebook_rate
        assert calculation.tax_cents == Decimal("70")

    def test_seller_rate_wins(self, session, product, seller, make_tax_rate, german_vat):
        seller_rate = make_tax_rate("DE", "0.20", user_id=seller.user_id, is_seller_responsible=True)

        calculation = _calculate(session, product, country="DE")

        assert calculation.zip_tax_rate is seller_rate

    def test_deleted_rate_ignored(self, session, product, make_tax_rate):
        make_tax_rate("DE", "0.19", deleted_at=datetime.now(timezone.utc))

        assert _calculate(session, product, country="DE").zip_tax_rate is None

    def test_taxable_us_state(self, session, product, make_tax_rate):
        rate = make_tax_rate("US", "0.08875", state="NY")

        calculation = _calculate(session, product, country="US", state="ny")

        assert calculation.zip_tax_rate is rate

    def test_untaxed_us_state(self, session, product, make_tax_rate):
        make_tax_rate("US", "0.0725", state="CA")

        assert _calculate(session, product, country="US", state="CA").zip_tax_rate is None

    def test_vat_exempt_region(self, session, product, make_tax_rate):
        make_tax_rate("ES", "0.21")

        calculation = _calculate(session, product, country="ES", region="Canary Islands")

        assert calculation.zip_tax_rate is None

    def test_optional_country_needs_config(self, session, product, make_tax_rate):
        make_tax_rate("JP", "0.10")

        assert _calculate(session, product, country="JP").zip_tax_rate is None

        config = LedgerConfig(collect_tax_countries=frozenset({"JP"}))
        assert _calculate(session, product, config=config, country="JP").tax_cents == Decimal("100")

    def test_digital_only_country_skips_physical(self, session, make_product, seller, make_tax_rate):
        make_tax_rate("MX", "0.16")
        physical = make_product(seller, is_physical=True)
        config = LedgerConfig(collect_tax_countries=frozenset({"MX"}))

        assert _calculate(session, physical, config=config, country="MX").tax_cents == 0

    def test_singapore_rate_for_current_year(self, session, product, make_tax_rate):
        year = datetime.now(timezone.utc).year
        make_tax_rate("SG", "0.08", applicable_years=[year - 1])
        current = make_tax_rate("SG", "0.09", applicable_years=[year])

        assert _calculate(session, product, country="SG").zip_tax_rate is current

    def test_no_country(self, session, product, german_vat):
        assert _calculate(session, product).zip_tax_rate is None

    def test_price_must_be_integer(self, session, product):
        with pytest.raises(SalesTaxCalculatorValidationError):
            SalesTaxCalculator(
                session, LedgerConfig(), product=product, price_cents=Decimal("1"), buyer_location={}
            )


class TestFormatVatIdValidator:
    """Test offline VAT id format checks."""

    def test_eu_ids(self):
        validator = FormatVatIdValidator()

        assert validator.is_valid("DE 123.456.789", "DE") is True
        assert validator.is_valid("123", "DE") is False

    def test_australian_abn(self):
        validator = FormatVatIdValidator()

        assert validator.is_valid("51 824 753 556", "AU") is True
        assert validator.is_valid("5182475355", "AU") is False
