"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class UnionLedgerConfig(BaseSettings):
    """Credit union ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="UNION_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///union_ledger.db"  # or memory:// for tests

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "GMD"
    loan_annual_interest_rate: str = "0.01"  # 1% micro-interest
    loan_min_amount: str = "10000.00"
    loan_max_amount: str = "1000000.00"
    loan_max_term_months: int = 180
    loan_grace_period_days: int = 30  # Days past due before default

    # Concurrency configuration
    guard_timeout_seconds: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True

    @property
    def annual_interest_rate(self) -> Decimal:
        return Decimal(self.loan_annual_interest_rate)


# Global configuration instance
config = UnionLedgerConfig()


def get_config() -> UnionLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> UnionLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = UnionLedgerConfig()
    return config
