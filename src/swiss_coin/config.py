"""Configuration management for Swiss Coin."""

from decimal import Decimal
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import SettlementPolicy
from .money import MAX_AMOUNT


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Currency used when an expense, settlement or reminder doesn't name one
    default_currency: str = "USD"

    # Over-settlement handling: "reject" or "clamp"
    settlement_policy: SettlementPolicy = SettlementPolicy.REJECT

    # Split validation
    percentage_tolerance: Decimal = Decimal("0.01")
    max_amount: Decimal = MAX_AMOUNT

    # Database path
    database_path: Path = Path.home() / ".swiss_coin" / "swiss_coin.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        code = value.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"Invalid currency code: {value!r}")
        return code

    @field_validator("database_path")
    @classmethod
    def expand_database_path(cls, value: Path) -> Path:
        return Path(value).expanduser()


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check DEFAULT_CURRENCY, SETTLEMENT_POLICY and "
            f"DATABASE_PATH in your environment or .env file.\n"
            f"Error: {e}"
        ) from e
