"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional, Set


class LendingConfig(BaseSettings):
    """P2P lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///lendit.db"  # sqlite:///path, memory:// or postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Loan defaults
    default_currency: str = "INR"
    default_interest_rate: str = "10"  # Annual percent when a request omits it

    # Settlement caps (major units of default_currency)
    upi_max_amount: str = "100000"
    bank_max_amount: str = "10000000"
    wallet_max_amount: str = "200000"
    cash_max_amount: str = "200000"  # Regulatory ceiling for cash

    # Settlement fees
    wallet_fee_rate: str = "0.02"
    crypto_network_fee: str = "150"  # Flat estimate, network dependent

    # UPI collect details
    upi_merchant_vpa: str = "lendit@ybl"
    upi_merchant_name: str = "LendIt Platform"

    # Notifications
    notification_webhook_url: str = ""  # Empty = in-app only
    notification_webhook_timeout: int = 10

    # Reconciliation
    reconciler_ids: str = ""  # Comma-separated caller ids allowed to finalize transactions

    def reconciler_id_set(self) -> Set[str]:
        return {part.strip() for part in self.reconciler_ids.split(",") if part.strip()}

    class Config:
        env_prefix = "LENDIT_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
