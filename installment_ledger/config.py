"""
Configuration Management Module

Environment based configuration for the installment ledger using pydantic-settings.
"""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Installment ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///installment_ledger.db"  # memory://, sqlite:///path, mongodb://...
    mongo_database: str = "installment_ledger"

    # auto checks the store before every mutation
    transaction_mode: Literal["auto", "transactional", "compensating"] = "auto"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    idempotency_window_seconds: float = 5.0
    rounding_epsilon: str = "0.001"
    default_rounding_policy: str = "nearest"
    default_interest_model: str = "equal"
    default_markup_percent: str = "40"
    schedule_tolerance: str = "1.00"  # Max difference accepted for a client supplied schedule

    # Feature flags
    enable_audit_logging: bool = True


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
