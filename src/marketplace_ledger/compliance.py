"""Country and region tables used by tax calculation."""

from __future__ import annotations

USA = "US"
CANADA = "CA"
AUSTRALIA = "AU"
SINGAPORE = "SG"
NORWAY = "NO"
SPAIN = "ES"

QUEBEC = "QC"

EU_VAT_APPLICABLE_COUNTRY_CODES = frozenset({
    "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "ES", "FI", "FR", "GB",
    "GR", "HR", "HU", "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT",
    "RO", "SE", "SI", "SK",
})

# US states where the platform is a marketplace facilitator.
TAXABLE_US_STATE_CODES = frozenset({
    "AR", "AZ", "CO", "CT", "DC", "GA", "HI", "IA", "IL", "IN", "KS", "KY",
    "LA", "MA", "MD", "MI", "MN", "NC", "ND", "NE", "NJ", "NM", "NV", "NY",
    "OH", "OK", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "WA", "WI",
    "WV", "WY",
})

# Optional countries, only collected when enabled in LedgerConfig.
COUNTRIES_THAT_COLLECT_TAX_ON_ALL_PRODUCTS = frozenset({
    "IS", "JP", "NZ", "ZA", "CH", "AE", "IN",
})
COUNTRIES_THAT_COLLECT_TAX_ON_DIGITAL_PRODUCTS = frozenset({
    "MX", "KR", "TR", "SA", "CL", "CO", "MY", "TH", "KE", "NG",
})

# Countries with a separate e-publication rate among the optional ones.
SPECIAL_EPUBLICATION_COUNTRIES = frozenset({"IS", "CH", "MX"})

# Territories of EU countries exempt from VAT.
VAT_EXEMPT_REGIONS = frozenset({"Canary Islands", "Canarias", "Ceuta", "Melilla"})


def is_taxable_us_state(state: str | None) -> bool:
    return bool(state) and state.upper() in TAXABLE_US_STATE_CODES


def is_eu_vat_country(country: str | None) -> bool:
    return bool(country) and country.upper() in EU_VAT_APPLICABLE_COUNTRY_CODES
