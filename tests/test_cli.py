"""Tests for the ledger CLI."""

import json
from uuid import uuid4

import pytest

from marketplace_ledger import database
from marketplace_ledger.cli import LedgerCli
from marketplace_ledger.config import get_settings


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    for name in ("MERCHANT_OF_RECORD_FEE", "SELLERS_BEAR_AFFILIATE_FEES", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    database.reset_db()
    yield
    get_settings.cache_clear()
    database.reset_db()


@pytest.fixture
def database_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    assert LedgerCli().run(["--database-url", url, "init-db"]) == 0
    database.reset_db()
    return url


class TestFeeQuote:
    """Test fee quotes."""

    def test_json(self, capsys):
        assert LedgerCli().run(["fee-quote", "--price-cents", "100", "--json"]) == 0

        quote = json.loads(capsys.readouterr().out)
        assert quote["fee_cents"] == 93
        assert quote["seller_cents"] == 7
        assert quote["affiliate_credit_cents"] == 0

    def test_with_affiliate(self, capsys):
        LedgerCli().run(["fee-quote", "--price-cents", "1000", "--affiliate-bps", "1500", "--json"])

        quote = json.loads(capsys.readouterr().out)
        assert quote["fee_cents"] == 209
        assert quote["affiliate_credit_cents"] == 118
        assert quote["seller_cents"] == 673

    def test_without_merchant_of_record_fee(self, capsys):
        LedgerCli().run(["fee-quote", "--price-cents", "1000", "--no-mor-fee", "--json"])

        assert json.loads(capsys.readouterr().out)["fee_cents"] == 159

    def test_text(self, capsys):
        LedgerCli().run(["fee-quote", "--price-cents", "100"])

        out = capsys.readouterr().out
        assert "Fee:" in out
        assert "Seller:" in out

    def test_negative_price(self, capsys):
        assert LedgerCli().run(["fee-quote", "--price-cents", "-1"]) == 1
        assert "must not be negative" in capsys.readouterr().err


class TestDatabaseCommands:
    """Test commands that read the ledger database."""

    def test_init_db(self, tmp_path, capsys):
        url = f"sqlite:///{tmp_path / 'new.db'}"

        assert LedgerCli().run(["--database-url", url, "init-db"]) == 0

        assert "Ledger schema ready" in capsys.readouterr().out
        assert (tmp_path / "new.db").exists()

    def test_balance(self, database_url, capsys):
        user_id = uuid4()

        assert LedgerCli().run(["--database-url", database_url, "balance", "--user-id", str(user_id)]) == 0

        out = capsys.readouterr().out
        assert str(user_id) in out
        assert "(none)" in out

    def test_metrics_prometheus(self, database_url, capsys):
        capsys.readouterr()

        assert LedgerCli().run(["--database-url", database_url, "metrics"]) == 0

        assert "ledger_purchases_successful_total 0" in capsys.readouterr().out

    def test_metrics_json(self, database_url, capsys):
        capsys.readouterr()

        LedgerCli().run(["--database-url", database_url, "metrics", "--format", "json"])

        assert json.loads(capsys.readouterr().out)["refunds_total"]["value"] == 0


def test_no_command(capsys):
    assert LedgerCli().run([]) == 1
