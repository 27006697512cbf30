"""
Threat rule configuration.

The configuration is an immutable snapshot. Overrides never patch a live
object: merge_config() builds a new snapshot from defaults and a plain
mapping of overrides, and the rule engine swaps snapshots on reload.
"""
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings, get_settings
from ..exceptions import ThreatEngineError
from ..schemas.alert import Severity

logger = logging.getLogger("n7-threat.rule-config")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class EngineConfig(_Frozen):
    enabled: bool = True
    parallel_execution: bool = True
    # Per-rule budget in milliseconds
    max_execution_time: int = 5000
    log_detailed_metrics: bool = False


class HotReloadConfig(_Frozen):
    enabled: bool = False
    interval_ms: int = 60_000


class RuleSettings(_Frozen):
    enabled: bool = True
    severity: Severity = Severity.HIGH
    config: Dict[str, Any] = Field(default_factory=dict)


class DefaultRulesConfig(_Frozen):
    brute_force: RuleSettings = RuleSettings(
        severity=Severity.HIGH,
        config={
            "threshold": 5,
            "time_window_minutes": 15,
            "check_ip_based": True,
            "check_user_based": True,
            "severity_thresholds": {"low": 3, "medium": 5, "high": 10, "critical": 20},
        },
    )
    ip_hopping: RuleSettings = RuleSettings(
        severity=Severity.HIGH,
        config={
            "max_ips_threshold": 3,
            "suspicious_ip_change_minutes": 5,
            "lookback_minutes": 30,
            "vpn_detection": True,
            "geo_velocity_check": True,
            "max_velocity_km_per_hour": 1000,
        },
    )
    geo_anomaly: RuleSettings = RuleSettings(
        severity=Severity.HIGH,
        config={
            "blocked_countries": ["KP", "IR"],
            "check_new_country": True,
            "user_pattern_learning": True,
            "learning_period_days": 30,
        },
    )
    credential_stuffing: RuleSettings = RuleSettings(
        severity=Severity.CRITICAL,
        config={
            "min_unique_users": 5,
            "lookback_minutes": 10,
            "max_time_between_attempts": 2000,
        },
    )
    account_enumeration: RuleSettings = RuleSettings(
        severity=Severity.HIGH,
        config={
            "min_attempts": 5,
            "lookback_minutes": 15,
            "sequential_threshold": 3,
            "similarity_threshold": 0.8,
        },
    )
    session_hijacking: RuleSettings = RuleSettings(
        severity=Severity.CRITICAL,
        config={
            "max_session_ip_changes": 2,
            "lookback_minutes": 60,
            "check_ip_change": True,
            "check_user_agent_change": True,
            "check_geo_jump": True,
        },
    )
    time_anomaly: RuleSettings = RuleSettings(
        severity=Severity.MEDIUM,
        config={
            "allowed_hours": None,
            "allowed_days": None,
            "timezone": None,
            "check_user_pattern": True,
            "pattern_learning_days": 30,
            "suspicious_hours": {"start": 0, "end": 6},
        },
    )

    def items(self):
        """(rule type, settings) pairs in declaration order."""
        return [(name, getattr(self, name)) for name in type(self).model_fields]


class AlertsConfig(_Frozen):
    enabled_severities: List[Severity] = [Severity.HIGH, Severity.CRITICAL]


class ActionPolicy(_Frozen):
    enabled: bool = True
    severity_threshold: Severity = Severity.HIGH


class ActionsConfig(_Frozen):
    auto_block: ActionPolicy = ActionPolicy(enabled=False, severity_threshold=Severity.CRITICAL)
    require_2fa: ActionPolicy = ActionPolicy(enabled=True, severity_threshold=Severity.HIGH)
    invalidate_sessions: ActionPolicy = ActionPolicy(enabled=True, severity_threshold=Severity.CRITICAL)

    def permitted(self, actions: Iterable[str], severity: Severity) -> List[str]:
        """Filter suggested actions down to those the response policy allows at this severity."""
        policies = {
            "BLOCK_IP": self.auto_block,
            "REQUIRE_2FA": self.require_2fa,
            "INVALIDATE_SESSIONS": self.invalidate_sessions,
        }
        allowed = []
        for action in actions:
            name = getattr(action, "value", action)
            policy = policies.get(name)
            if policy is None or (policy.enabled and severity.rank >= policy.severity_threshold.rank):
                allowed.append(name)
        return allowed


class ThreatRulesConfig(_Frozen):
    engine: EngineConfig = EngineConfig()
    hot_reload: HotReloadConfig = HotReloadConfig()
    default_rules: DefaultRulesConfig = DefaultRulesConfig()
    alerts: AlertsConfig = AlertsConfig()
    actions: ActionsConfig = ActionsConfig()


DEFAULT_THREAT_RULES_CONFIG = ThreatRulesConfig()


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_config(defaults: ThreatRulesConfig, overrides: Mapping[str, Any]) -> ThreatRulesConfig:
    """
    Returns a new snapshot with overrides applied on top of defaults.
    Nested mappings merge key by key; lists and scalars replace.
    """
    return ThreatRulesConfig.model_validate(_deep_merge(defaults.model_dump(), overrides))


# Environment key -> path in the configuration tree
_ENV_OVERRIDES = {
    "THREAT_RULES_ENABLED": ("engine", "enabled"),
    "THREAT_RULES_PARALLEL": ("engine", "parallel_execution"),
    "THREAT_RULES_MAX_EXECUTION_TIME": ("engine", "max_execution_time"),
    "THREAT_RULES_HOT_RELOAD": ("hot_reload", "enabled"),
    "THREAT_RULES_RELOAD_INTERVAL": ("hot_reload", "interval_ms"),
    "THREAT_RULE_BRUTE_FORCE_ENABLED": ("default_rules", "brute_force", "enabled"),
    "THREAT_RULE_IP_HOPPING_ENABLED": ("default_rules", "ip_hopping", "enabled"),
    "THREAT_RULE_GEO_ANOMALY_ENABLED": ("default_rules", "geo_anomaly", "enabled"),
    "THREAT_RULE_CREDENTIAL_STUFFING_ENABLED": ("default_rules", "credential_stuffing", "enabled"),
    "THREAT_RULE_ACCOUNT_ENUMERATION_ENABLED": ("default_rules", "account_enumeration", "enabled"),
    "THREAT_RULE_SESSION_HIJACKING_ENABLED": ("default_rules", "session_hijacking", "enabled"),
    "THREAT_RULE_TIME_ANOMALY_ENABLED": ("default_rules", "time_anomaly", "enabled"),
}


def overrides_from_settings(settings: Settings) -> Dict[str, Any]:
    """Nested override mapping built from the THREAT_RULE* settings that are set."""
    overrides: Dict[str, Any] = {}
    for key, path in _ENV_OVERRIDES.items():
        value = getattr(settings, key)
        if value is None:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value
    return overrides


def load_overrides_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Reads a YAML overrides file shaped like ThreatRulesConfig (snake_case keys)."""
    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ThreatEngineError(f"Threat rule config file {path} must contain a mapping")
    return data


def load_threat_rules_config(settings: Optional[Settings] = None) -> ThreatRulesConfig:
    """Defaults, then the optional overrides file, then environment overrides."""
    settings = settings or get_settings()
    config = DEFAULT_THREAT_RULES_CONFIG

    if settings.THREAT_RULES_CONFIG_FILE:
        logger.info(f"Loading threat rule overrides from {settings.THREAT_RULES_CONFIG_FILE}")
        config = merge_config(config, load_overrides_file(settings.THREAT_RULES_CONFIG_FILE))

    return merge_config(config, overrides_from_settings(settings))
