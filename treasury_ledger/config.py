"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Treasury ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="TREASURY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "treasury.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Audit configuration
    enable_audit_logging: bool = True
    audit_table: str = "audit_events"

    # Business rules configuration
    day_count_basis: int = 365
    block_delete_with_movements: bool = True
    max_movement_amount: Optional[str] = None  # Decimal string; None = unlimited


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
