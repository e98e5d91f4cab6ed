"""Tests for settings loading."""

from decimal import Decimal

import pytest

from swiss_coin.config import Settings, load_settings
from swiss_coin.exceptions import ConfigurationError
from swiss_coin.models import SettlementPolicy


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "data" / "ledger.db"))
    settings = load_settings()

    assert settings.default_currency == "USD"
    assert settings.settlement_policy == SettlementPolicy.REJECT
    assert settings.percentage_tolerance == Decimal("0.01")
    assert (tmp_path / "data").is_dir()


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "ledger.db"))
    monkeypatch.setenv("DEFAULT_CURRENCY", "eur")
    monkeypatch.setenv("SETTLEMENT_POLICY", "clamp")

    settings = load_settings()

    assert settings.default_currency == "EUR"
    assert settings.settlement_policy == SettlementPolicy.CLAMP


def test_invalid_currency(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "ledger.db"))
    monkeypatch.setenv("DEFAULT_CURRENCY", "DOLLARS")

    with pytest.raises(ConfigurationError):
        load_settings()


def test_home_directory_is_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    settings = Settings(database_path="~/ledger.db")

    assert settings.database_path == tmp_path / "ledger.db"
