"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class RepaymentsConfig(BaseSettings):
    """Loan repayments configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "loan_repayments.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    default_currency: str = "VND"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_REPAYMENTS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = RepaymentsConfig()


def get_config() -> RepaymentsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> RepaymentsConfig:
    """Reload configuration from environment"""
    global config
    config = RepaymentsConfig()
    return config
