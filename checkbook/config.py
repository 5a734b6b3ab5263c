"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class CheckbookConfig(BaseSettings):
    """Checkbook ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///checkbook.db"  # memory:// for a throwaway ledger

    # Ledger defaults
    default_account_type: str = "checking"
    categories: List[str] = []  # Allowed entry categories; empty = any tag

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "CHECKBOOK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CheckbookConfig()


def get_config() -> CheckbookConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CheckbookConfig:
    """Reload configuration from environment"""
    global config
    config = CheckbookConfig()
    return config
