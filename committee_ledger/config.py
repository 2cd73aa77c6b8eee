"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional

from .currency import Currency, decimal_from_string


class LedgerConfig(BaseSettings):
    """Committee ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///ledger.db"  # memory:// for a throwaway store

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "INR"
    closure_tolerance: str = "1"  # A loan within one unit of zero counts as closed
    committee_penalty_rate: str = "0.01"  # 1% of the monthly premium
    default_batch_duration_months: int = 36
    default_loan_interest_rate: str = "1"  # Monthly percent

    # Maturity payout: 50,000 returned for every 36,000 contributed
    maturity_payout: str = "50000"
    maturity_base: str = "36000"

    # Identifier sequences
    first_loan_number: int = 1001
    first_external_member_number: int = 501

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def ledger_currency(self) -> Currency:
        """Configured currency as an enum member"""
        return Currency[self.currency.upper()]

    @property
    def closure_tolerance_amount(self) -> Decimal:
        return decimal_from_string(self.closure_tolerance)

    @property
    def penalty_rate(self) -> Decimal:
        return decimal_from_string(self.committee_penalty_rate)

    @property
    def loan_interest_rate(self) -> Decimal:
        return decimal_from_string(self.default_loan_interest_rate)

    @property
    def maturity_ratio(self) -> Decimal:
        """Payout per unit contributed over a full batch"""
        return decimal_from_string(self.maturity_payout) / decimal_from_string(self.maturity_base)


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
