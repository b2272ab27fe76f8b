"""Centralized settings for the voice agent control plane.

Uses pydantic-settings to load from environment variables (prefixed
VOICEGUARD_) with defaults suitable for local development.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Control plane settings loaded from environment variables."""

    # --- Deployment identity ---
    environment: str = "development"
    service_name: str = "voice-agent-v2"
    dashboard_base_url: str = ""

    # --- Feature switches ---
    alerts_enabled: bool = True
    notifications_enabled: bool = True
    rollout_monitoring_enabled: bool = True
    auto_rollback_on_critical: bool = False

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # --- Intervals (seconds) ---
    alert_evaluation_interval: float = 30.0
    rollout_monitoring_interval: float = 60.0
    housekeeping_interval: float = 300.0

    # --- Slack ---
    slack_webhook_url: str = ""
    slack_channel: str = "#alerts"
    slack_mention_users: str = ""  # comma separated user ids

    # --- Email ---
    alert_email_recipients: str = ""  # comma separated addresses
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_secure: bool = True
    smtp_username: str = ""
    smtp_password: str = ""
    email_sender: str = "alerts@voice-agent.local"

    # --- PagerDuty ---
    pagerduty_routing_key: str = ""

    # --- Generic webhook ---
    alert_webhook_url: str = ""

    # --- Rollout store ---
    database_url: str = "sqlite:///voiceguard.db"
    use_database: bool = False
    feature_flag_name: str = "voice_agent_v2"

    model_config = {
        "env_prefix": "VOICEGUARD_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @staticmethod
    def split_list(value: str) -> list[str]:
        """Split a comma separated setting into a clean list."""
        return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
