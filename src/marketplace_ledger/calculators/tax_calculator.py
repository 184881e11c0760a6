"""Sales tax / VAT calculation for a purchase.

Looks up the applicable ZipTaxRate for the buyer's location and decides
whether the product is taxable there. Tax is returned unrounded; the
purchase service rounds it when storing.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from marketplace_ledger import compliance
from marketplace_ledger.calculators.types import SalesTaxCalculation
from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.models.catalog import Product, ZipTaxRate

logger = logging.getLogger(__name__)


class SalesTaxCalculatorValidationError(ValueError):
    """Raised when the calculator is given malformed input."""


class VatIdValidator(Protocol):
    """Validates a buyer's business tax id for a country."""

    def is_valid(self, vat_id: str, country_code: str) -> bool:
        ...


class FormatVatIdValidator:
    """Offline validator that only checks the id format.

    Production deployments plug in a validator that calls the tax
    authority (VIES, ABN lookup, ...).
    """

    PATTERNS: dict[str, str] = {
        "AU": r"^\d{11}$",
        "SG": r"^(M\d{8}[A-Z]|\d{8,9}[A-Z])$",
        "NO": r"^(NO)?\d{9}(MVA)?$",
        "CA": r"^\d{10}TQ\d{4}$",
    }
    EU_PATTERN = r"^[A-Z]{2}[0-9A-Z+*]{2,12}$"

    def is_valid(self, vat_id: str, country_code: str) -> bool:
        normalized = re.sub(r"[\s.\-]", "", vat_id).upper()
        pattern = self.PATTERNS.get(country_code.upper(), self.EU_PATTERN)
        return re.match(pattern, normalized) is not None


class SalesTaxCalculator:
    """Calculates the tax on a purchase price.

    Args:
        session: Database session for tax rate lookups
        config: Ledger configuration (optional tax countries)
        product: The product being bought
        price_cents: Price in USD cents
        buyer_location: Mapping with ``country``, optional ``state``,
            ``postal_code`` and ``region``
        buyer_vat_id: Business tax id supplied by the buyer
        vat_validator: Validator for ``buyer_vat_id``
    """

    def __init__(
        self,
        session: Session,
        config: LedgerConfig,
        *,
        product: Product,
        price_cents: int,
        buyer_location: Mapping[str, Any],
        shipping_cents: int = 0,
        quantity: int = 1,
        buyer_vat_id: str | None = None,
        vat_validator: VatIdValidator | None = None,
    ):
        self.session = session
        self.config = config
        self.product = product
        self.price_cents = price_cents
        self.shipping_cents = shipping_cents
        self.quantity = quantity
        self.buyer_location = buyer_location
        self.buyer_vat_id = buyer_vat_id
        self.vat_validator = vat_validator or FormatVatIdValidator()
        self._validate()

        self.country: str | None = (buyer_location.get("country") or "").upper() or None
        self.state: str | None = None
        if self.country in (compliance.USA, compliance.CANADA):
            self.state = (buyer_location.get("state") or "").upper() or None

        self.is_us_taxable_state = self.country == compliance.USA and compliance.is_taxable_us_state(self.state)
        self.is_ca_taxable = self.country == compliance.CANADA and self.state is not None
        self.is_quebec = self.is_ca_taxable and self.state == compliance.QUEBEC

    def calculate(self) -> SalesTaxCalculation:
        if self.price_cents == 0:
            return SalesTaxCalculation.zero_tax(self.price_cents)

        if self.product.seller.has_brazilian_stripe_connect_account:
            return SalesTaxCalculation.zero_tax(self.price_cents)

        if self._is_vat_id_valid():
            return SalesTaxCalculation.zero_business_vat(self.price_cents)

        tax_rate = self._lookup_tax_rate()
        if tax_rate is None or not self._is_tax_eligible(tax_rate):
            return SalesTaxCalculation.zero_tax(self.price_cents)

        return SalesTaxCalculation(
            price_cents=self.price_cents,
            tax_cents=self.price_cents * tax_rate.combined_rate,
            zip_tax_rate=tax_rate,
            business_vat_status="invalid" if self.buyer_vat_id else None,
            is_quebec=self.is_quebec,
        )

    def _validate(self) -> None:
        if not isinstance(self.price_cents, int) or isinstance(self.price_cents, bool):
            raise SalesTaxCalculatorValidationError("Price (cents) should be an Integer")
        if not isinstance(self.buyer_location, Mapping):
            raise SalesTaxCalculatorValidationError("Buyer Location should be a Mapping")
        if not isinstance(self.product, Product):
            raise SalesTaxCalculatorValidationError("Product should be a Product instance")

    def _is_vat_id_valid(self) -> bool:
        if not self.buyer_vat_id or not self.country:
            return False
        return self.vat_validator.is_valid(self.buyer_vat_id, self.country)

    def _alive_rates(self, country: str):
        # Seller-specific rates win over the platform rates.
        return (
            select(ZipTaxRate)
            .where(
                ZipTaxRate.country == country,
                ZipTaxRate.deleted_at.is_(None),
                or_(ZipTaxRate.user_id.is_(None), ZipTaxRate.user_id == self.product.user_id),
            )
            .order_by(ZipTaxRate.user_id.is_(None), ZipTaxRate.created_at)
        )

    def _first(self, stmt) -> ZipTaxRate | None:
        return self.session.scalars(stmt.limit(1)).first()

    def _lookup_tax_rate(self) -> ZipTaxRate | None:
        country = self.country
        if not country:
            return None

        epublication = self.product.is_epublication
        if self.is_us_taxable_state:
            rate = self._first(
                self._alive_rates(compliance.USA).where(
                    ZipTaxRate.state == self.state, ZipTaxRate.is_epublication_rate.is_(False)
                )
            )
        elif compliance.is_eu_vat_country(country) or country == compliance.NORWAY:
            rate = self._first(
                self._alive_rates(country).where(ZipTaxRate.is_epublication_rate.is_(epublication))
            )
        elif country == compliance.AUSTRALIA:
            rate = self._first(
                self._alive_rates(country).where(ZipTaxRate.is_epublication_rate.is_(False))
            )
        elif country == compliance.SINGAPORE:
            rate = self._singapore_rate()
        elif country == compliance.CANADA:
            if self.state is None:
                return None
            rate = self._first(
                self._alive_rates(country).where(
                    ZipTaxRate.state == self.state, ZipTaxRate.is_epublication_rate.is_(False)
                )
            )
        elif self._collects_optional_tax(country):
            stmt = self._alive_rates(country)
            if country in compliance.SPECIAL_EPUBLICATION_COUNTRIES:
                stmt = stmt.where(ZipTaxRate.is_epublication_rate.is_(epublication))
            rate = self._first(stmt)
        else:
            rate = None

        if rate is not None and self._is_vat_exempt(rate):
            logger.info("Buyer region %s is VAT exempt", self.buyer_location.get("region"))
            return None
        return rate

    def _singapore_rate(self) -> ZipTaxRate | None:
        rates = list(
            self.session.scalars(
                self._alive_rates(compliance.SINGAPORE).where(ZipTaxRate.is_epublication_rate.is_(False))
            )
        )
        if not rates:
            return None
        year = datetime.now(timezone.utc).year
        for rate in rates:
            if year in (rate.applicable_years or []):
                return rate
        return max(rates, key=lambda r: max(r.applicable_years or [0]))

    def _collects_optional_tax(self, country: str) -> bool:
        optional = (
            compliance.COUNTRIES_THAT_COLLECT_TAX_ON_ALL_PRODUCTS
            | compliance.COUNTRIES_THAT_COLLECT_TAX_ON_DIGITAL_PRODUCTS
        )
        return country in optional and self.config.collects_tax_in(country)

    def _is_vat_exempt(self, rate: ZipTaxRate) -> bool:
        if rate.country != compliance.SPAIN:
            return False
        return self.buyer_location.get("region") in compliance.VAT_EXEMPT_REGIONS

    def _is_tax_eligible(self, rate: ZipTaxRate) -> bool:
        country = rate.country
        if self.product.is_physical and country == compliance.USA:
            return True
        if compliance.is_eu_vat_country(country):
            return True
        if country in (compliance.AUSTRALIA, compliance.SINGAPORE, compliance.NORWAY):
            return True
        if country in compliance.COUNTRIES_THAT_COLLECT_TAX_ON_ALL_PRODUCTS and self.config.collects_tax_in(country):
            return True
        if (
            country in compliance.COUNTRIES_THAT_COLLECT_TAX_ON_DIGITAL_PRODUCTS
            and not self.product.is_physical
            and self.config.collects_tax_in(country)
        ):
            return True
        if self.is_us_taxable_state or self.is_ca_taxable:
            return True
        return rate.user_id is not None
