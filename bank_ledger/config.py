"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Ledger core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db, postgresql://...
    lock_timeout_seconds: float = 5.0  # Bounded wait for an account row
    max_conflict_retries: int = 3  # Retries on storage contention before Busy
    retry_backoff_seconds: float = 0.01

    # Business rules configuration
    amount_scale: int = 2  # Decimal places in minor units
    allow_owner_balance_edits: bool = True  # Owners may correct their own balance

    # Feature flags
    enable_audit_logging: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text


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
