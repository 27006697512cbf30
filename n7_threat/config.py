from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application Configuration.
    Reads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    # Functionality
    ENVIRONMENT: Literal["development", "production", "testing"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database (alert store)
    DATABASE_URL: str = "postgresql+asyncpg://n7:n7@localhost:5432/n7_threat"

    # Message Bus (NATS) - escalation sink
    NATS_URL: str = "nats://localhost:4222"
    NATS_CLIENT_ID: str = "n7-threat-1"
    ESCALATION_SUBJECT: str = "n7.alerts.escalations"
    EVENTS_SUBJECT: str = "n7.security.events"

    # Alert correlation (windows in milliseconds)
    ALERT_CORRELATION_WINDOW: int = 3_600_000
    ALERT_CORRELATION_MIN_ALERTS: int = 3
    ALERT_CORRELATION_AUTO_ESCALATE: bool = True
    ALERT_ESCALATION_CRITICAL_COUNT: int = 2
    ALERT_ESCALATION_HIGH_COUNT: int = 3
    ALERT_ESCALATION_TOTAL_COUNT: int = 5

    # Alert deduplication (fingerprint time slot, milliseconds)
    ALERT_DEDUPLICATION_WINDOW: int = 300_000

    # Threat rule engine. Unset values fall back to the rule config defaults.
    THREAT_RULES_ENABLED: Optional[bool] = None
    THREAT_RULES_PARALLEL: Optional[bool] = None
    THREAT_RULES_MAX_EXECUTION_TIME: Optional[int] = None
    THREAT_RULES_HOT_RELOAD: Optional[bool] = None
    THREAT_RULES_RELOAD_INTERVAL: Optional[int] = None
    THREAT_RULES_CONFIG_FILE: Optional[str] = None

    # Per-rule toggles
    THREAT_RULE_BRUTE_FORCE_ENABLED: Optional[bool] = None
    THREAT_RULE_IP_HOPPING_ENABLED: Optional[bool] = None
    THREAT_RULE_GEO_ANOMALY_ENABLED: Optional[bool] = None
    THREAT_RULE_CREDENTIAL_STUFFING_ENABLED: Optional[bool] = None
    THREAT_RULE_ACCOUNT_ENUMERATION_ENABLED: Optional[bool] = None
    THREAT_RULE_SESSION_HIJACKING_ENABLED: Optional[bool] = None
    THREAT_RULE_TIME_ANOMALY_ENABLED: Optional[bool] = None


def get_settings() -> Settings:
    """Build a fresh Settings instance so callers see the current environment."""
    return Settings()


settings = Settings()
