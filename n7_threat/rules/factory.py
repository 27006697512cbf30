import logging
from typing import Any, Dict, List, Mapping, Type

from ..exceptions import RuleConfigurationError, UnknownRuleTypeError
from .account_enumeration import AccountEnumerationRule
from .base import DetectionRule, RuleStatus
from .brute_force import BruteForceRule
from .config import ThreatRulesConfig
from .credential_stuffing import CredentialStuffingRule
from .geo_anomaly import GeoAnomalyRule
from .ip_hopping import IpHoppingRule
from .session_hijacking import SessionHijackingRule
from .time_anomaly import TimeAnomalyRule

logger = logging.getLogger("n7-threat.rule-factory")

RULE_REGISTRY: Dict[str, Type[DetectionRule]] = {
    rule_class.rule_type: rule_class
    for rule_class in (
        BruteForceRule,
        IpHoppingRule,
        GeoAnomalyRule,
        CredentialStuffingRule,
        AccountEnumerationRule,
        SessionHijackingRule,
        TimeAnomalyRule,
    )
}


def supported_rule_types() -> List[str]:
    return list(RULE_REGISTRY)


def create_rule(record: Mapping[str, Any]) -> DetectionRule:
    """
    Builds a rule from a plain record:
    {"type", "id", "name", "description", "version", "status", "severity", "tags", "config"}.
    The partial config is merged over the rule's defaults. Raises if the type is
    unknown or the resulting configuration does not validate.
    """
    rule_type = record.get("type")
    rule_class = RULE_REGISTRY.get(rule_type)
    if rule_class is None:
        raise UnknownRuleTypeError(str(rule_type))

    fields = ("id", "name", "description", "version", "status", "severity", "tags")
    kwargs = {k: record[k] for k in fields if record.get(k) is not None}
    rule = rule_class(config=record.get("config") or {}, **kwargs)

    if not rule.validate():
        raise RuleConfigurationError(rule.id)
    return rule


def to_record(rule: DetectionRule) -> Dict[str, Any]:
    return rule.to_record()


def build_rules(config: ThreatRulesConfig) -> List[DetectionRule]:
    """
    Constructs the default rule set from a configuration snapshot.
    Disabled families come back INACTIVE; a family whose configuration fails
    validation is left out and the rest are unaffected.
    """
    rules = []
    for rule_type, rule_settings in config.default_rules.items():
        record = {
            "type": rule_type,
            "severity": rule_settings.severity,
            "status": RuleStatus.ACTIVE if rule_settings.enabled else RuleStatus.INACTIVE,
            "config": rule_settings.config,
        }
        try:
            rules.append(create_rule(record))
        except RuleConfigurationError as e:
            logger.error(f"Skipping rule {rule_type}: {e}")
    return rules
