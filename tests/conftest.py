"""Pytest fixtures for marketplace ledger tests."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterator
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace_ledger.config import LedgerConfig
from marketplace_ledger.events import EventEmitter, RecordingHandler
from marketplace_ledger.ledger import PurchaseLedger
from marketplace_ledger.models import (
    Affiliate,
    Base,
    HolderOfFunds,
    MerchantAccount,
    Product,
    User,
    ZipTaxRate,
    get_platform_merchant_account,
)
from marketplace_ledger.processors import ChargeProcessorRegistry, PaypalStubProcessor, StripeStubProcessor

# In-memory SQLite shared by every connection of the engine
TEST_DATABASE_URL = "sqlite://"


@pytest.fixture
def engine():
    """Create a fresh test database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session(engine) -> Iterator[Session]:
    """Create a database session for each test."""
    session_factory = sessionmaker(
        engine,
        expire_on_commit=False,
        autoflush=False,
    )

    with session_factory() as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Processors and the ledger
# ---------------------------------------------------------------------------


@pytest.fixture
def stripe() -> StripeStubProcessor:
    return StripeStubProcessor()


@pytest.fixture
def paypal() -> PaypalStubProcessor:
    return PaypalStubProcessor()


@pytest.fixture
def processors(stripe: StripeStubProcessor, paypal: PaypalStubProcessor) -> ChargeProcessorRegistry:
    return ChargeProcessorRegistry([stripe, paypal])


@pytest.fixture
def config() -> LedgerConfig:
    """Default configuration: merchant of record fee on."""
    return LedgerConfig()


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def emitter(recorder: RecordingHandler) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter


@pytest.fixture
def ledger(
    session: Session,
    config: LedgerConfig,
    processors: ChargeProcessorRegistry,
    emitter: EventEmitter,
) -> PurchaseLedger:
    return PurchaseLedger(session, config, processors, emitter)


# ---------------------------------------------------------------------------
# Accounts and catalog
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session: Session):
    """Factory for users."""

    def _make(**kwargs) -> User:
        kwargs.setdefault("email", f"user-{uuid4().hex[:8]}@example.com")
        user = User(**kwargs)
        session.add(user)
        session.flush()
        return user

    return _make


@pytest.fixture
def seller(make_user) -> User:
    """Create a test seller."""
    return make_user(email="seller@example.com")


@pytest.fixture
def affiliate_user(make_user) -> User:
    """Create a test affiliate user."""
    return make_user(email="affiliate@example.com")


@pytest.fixture
def team_member(make_user) -> User:
    return make_user(email="support@example.com", is_team_member=True)


@pytest.fixture
def platform_stripe_account(session: Session) -> MerchantAccount:
    return get_platform_merchant_account(session, "stripe")


@pytest.fixture
def platform_paypal_account(session: Session) -> MerchantAccount:
    return get_platform_merchant_account(session, "paypal")


@pytest.fixture
def make_merchant_account(session: Session):
    """Factory for seller merchant accounts."""

    def _make(user: User, **kwargs) -> MerchantAccount:
        kwargs.setdefault("charge_processor_id", "stripe")
        kwargs.setdefault("charge_processor_merchant_id", f"acct_{uuid4().hex[:16]}")
        account = MerchantAccount(user_id=user.user_id, **kwargs)
        session.add(account)
        session.flush()
        session.refresh(user)
        return account

    return _make


@pytest.fixture
def connect_account(make_merchant_account, seller: User) -> MerchantAccount:
    """Stripe Connect account; funds settle with the seller."""
    return make_merchant_account(
        seller, holder_of_funds=HolderOfFunds.SELLER.value, is_connect_account=True
    )


@pytest.fixture
def managed_account(make_merchant_account, seller: User) -> MerchantAccount:
    """US Stripe account managed by the platform for the seller."""
    return make_merchant_account(seller, holder_of_funds=HolderOfFunds.STRIPE.value)


@pytest.fixture
def make_product(session: Session):
    """Factory for products."""

    def _make(seller: User, **kwargs) -> Product:
        kwargs.setdefault("name", "Ebook")
        kwargs.setdefault("price_cents", 100)
        product = Product(user_id=seller.user_id, **kwargs)
        session.add(product)
        session.flush()
        return product

    return _make


@pytest.fixture
def product(make_product, seller: User) -> Product:
    """A $1 digital product."""
    return make_product(seller)


@pytest.fixture
def affiliate(session: Session, seller: User, affiliate_user: User) -> Affiliate:
    """Affiliate with a 15% cut."""
    affiliate = Affiliate(
        seller_id=seller.user_id,
        affiliate_user_id=affiliate_user.user_id,
        basis_points=1500,
    )
    session.add(affiliate)
    session.flush()
    return affiliate


@pytest.fixture
def make_tax_rate(session: Session):
    """Factory for tax rates."""

    def _make(country: str, rate: str, **kwargs) -> ZipTaxRate:
        tax_rate = ZipTaxRate(country=country, combined_rate=Decimal(rate), **kwargs)
        session.add(tax_rate)
        session.flush()
        return tax_rate

    return _make


@pytest.fixture
def german_vat(make_tax_rate) -> ZipTaxRate:
    return make_tax_rate("DE", "0.19")
