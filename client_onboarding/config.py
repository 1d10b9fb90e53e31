"""
Configuration Management Module

Centralized onboarding configuration using pydantic-settings. Every value can
be overridden with an ``ONBOARDING_``-prefixed environment variable or a
``.env`` file.
"""

from pydantic_settings import BaseSettings
from typing import List


class OnboardingConfig(BaseSettings):
    """Client onboarding service configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "onboarding.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Workflow state machine
    auto_transition_timeout_ms: int = 1000
    enable_auto_transitions: bool = True

    # Account setup
    minimum_initial_deposit: str = "10000"
    funding_timeline_days: int = 30
    allocation_tolerance: str = "1"

    # Compliance approval
    high_risk_jurisdictions: List[str] = ["AF", "MM", "PK", "VE", "YE"]
    onboarding_deadline_days: int = 30
    high_risk_deadline_days: int = 5
    restricted_jurisdictions: List[str] = ["CU", "IR", "KP", "SY"]

    # Identity verification
    max_verification_attempts: int = 3
    session_timeout_minutes: int = 30
    kba_question_count: int = 5
    kba_pass_score: int = 75
    identity_score_threshold: int = 85

    # Document collection
    max_file_size_mb: int = 10
    authenticity_review_threshold: int = 75
    expiry_warning_days: int = 30

    # Progress tracking
    history_limit: int = 100
    timeline_buffer_percent: int = 20

    # Notifications
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    class Config:
        env_prefix = "ONBOARDING_"
        env_file = ".env"
        case_sensitive = False


config = OnboardingConfig()


def get_config() -> OnboardingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> OnboardingConfig:
    """Reload configuration from environment"""
    global config
    config = OnboardingConfig()
    return config
