"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Loan servicing engine configuration"""

    # Calculation configuration
    default_currency: str = "GBP"
    day_count_basis: int = 365  # Actual/365 fixed
    rounding_tolerance: str = "0.01"  # Decimal as string
    average_days_per_month: str = "30.44"  # Used when converting a date span into monthly periods
    default_duration: int = 6  # Fallback when a loan carries no duration
    max_schedule_periods: int = 1200

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def tolerance(self) -> Decimal:
        return Decimal(self.rounding_tolerance)

    @property
    def basis(self) -> Decimal:
        return Decimal(self.day_count_basis)


# Global configuration instance
config = EngineSettings()


def get_config() -> EngineSettings:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineSettings:
    """Reload configuration from environment"""
    global config
    config = EngineSettings()
    return config
