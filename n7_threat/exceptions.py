"""
Exception hierarchy for the threat engine.

Rules never raise for missing context; these are reserved for configuration
problems and caller-contract violations on correlation groups.
"""


class ThreatEngineError(Exception):
    """Base class for all threat engine errors."""


class RuleConfigurationError(ThreatEngineError):
    """A rule's configuration failed validation."""

    def __init__(self, rule_id: str, detail: str = "invalid configuration"):
        self.rule_id = rule_id
        super().__init__(f"Invalid rule configuration for {rule_id}: {detail}")


class UnknownRuleTypeError(ThreatEngineError):
    def __init__(self, rule_type: str):
        self.rule_type = rule_type
        super().__init__(f"Unknown rule type: {rule_type}")


class CorrelationGroupNotFoundError(ThreatEngineError):
    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        super().__init__(f"No alerts found for correlation ID: {correlation_id}")


class InvalidMergeRequestError(ThreatEngineError):
    """Raised before any write when a merge names fewer than two distinct groups."""
