"""
Configuration Management Module

Engine-level settings loaded with pydantic-settings from the environment.
Business tables (bonus percentages, penalty rates) are not settings: they are
supplied per contract family by a PolicyProvider, see policies.py.
"""

from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Caisse ledger engine configuration"""

    # Collaborator timeouts
    persistence_timeout_seconds: float = 5.0
    notification_timeout_seconds: float = 2.0
    upload_timeout_seconds: float = 10.0

    # Refund workflow
    early_refund_deadline_days: int = 45
    final_refund_deadline_days: int = 30

    # Delay handling
    tolerance_days: int = 3
    penalty_max_days: int = 12

    # Support advances
    advance_min_paid_installments: int = 3
    advance_deduction_window: int = 3

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "CAISSE_LEDGER_"
        env_file = ".env"
        case_sensitive = False


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
