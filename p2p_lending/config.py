"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """P2P lending platform configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/file.db
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Lending policy defaults (rates as decimal strings)
    currency: str = "INR"
    initial_fee_rate: str = "0.01"
    penalty_fee_rate: str = "0.01"
    min_payment_percent: str = "0.20"
    term_days: int = 30
    grace_days: int = 10
    window_length_days: int = 10
    window_count: int = 4
    
    # Default reporting
    credit_reporting_enabled: bool = True
    outstanding_snapshot: str = "evaluation"  # evaluation or window_start
    
    # Credit bureau configuration
    credit_bureau_url: str = ""  # Empty = in-process mock bureau
    credit_bureau_timeout: float = 5.0
    credit_bureau_api_key: str = ""
    
    # Notification configuration
    notifications_enabled: bool = True
    notification_webhook_url: Optional[str] = None
    
    # Demo time simulation
    simulated_clock: bool = True
    
    class Config:
        env_prefix = "P2P_"
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
