"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class MicrocreditConfig(BaseSettings):
    """Microcredit engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///microcredit.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Collection rules
    fine_per_day: Decimal = Decimal("5")
    weeks_per_year: int = 52

    # Loan eligibility rules
    min_savings_for_loan: Decimal = Decimal("100")
    group_performance_threshold: Decimal = Decimal("0.5")

    # Savings
    default_compulsory_savings: Decimal = Decimal("20")

    class Config:
        env_prefix = "MICROCREDIT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrocreditConfig()


def get_config() -> MicrocreditConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrocreditConfig:
    """Reload configuration from environment"""
    global config
    config = MicrocreditConfig()
    return config
