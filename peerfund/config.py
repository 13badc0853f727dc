"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PeerFundConfig(BaseSettings):
    """PeerFund lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///peerfund.db"  # memory://, sqlite:///path or postgresql://

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Fee routing
    platform_user_id: str = "peerfund-platform"
    platform_fee_rate: str = "0.02"
    banking_fee_rate: str = "0.05"

    # Loan terms
    term_rate_spread_pct: str = "2"  # Added to the offer rate at acceptance
    min_loan_amount: str = "1"
    max_loan_amount: str = "250000"
    max_offer_message_length: int = 1000
    max_direct_request_months: int = 12

    # Payment gateway
    gateway_base_url: str = "https://api.stripe.com"
    gateway_api_key: str = ""
    gateway_timeout: float = 10.0
    gateway_currency: str = "usd"
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300

    # Auto-repayment scheduler
    autopay_enabled: bool = True
    autopay_hour_utc: int = 0

    # Retry policy
    wallet_cas_retries: int = 5
    audit_write_retries: int = 3

    class Config:
        env_prefix = "PEERFUND_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PeerFundConfig()


def get_config() -> PeerFundConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PeerFundConfig:
    """Reload configuration from environment"""
    global config
    config = PeerFundConfig()
    return config
