from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def raised(self) -> "Severity":
        """One level up, saturating at CRITICAL."""
        order = list(Severity)
        return order[min(self.rank, len(order) - 1)]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


def highest_severity(severities) -> Severity:
    return max(severities, key=lambda s: s.rank, default=Severity.LOW)


class AlertType(str, Enum):
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPICIOUS_LOGIN = "SUSPICIOUS_LOGIN"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    MULTIPLE_FAILED_ATTEMPTS = "MULTIPLE_FAILED_ATTEMPTS"
    THREAT_RULE_MATCH = "THREAT_RULE_MATCH"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    POLICY_VIOLATION = "POLICY_VIOLATION"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DISPATCHED = "DISPATCHED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"
    SUPPRESSED = "SUPPRESSED"


class CorrelationResult(BaseModel):
    """
    Outcome of correlating one new alert. Computed, never persisted as its own row.
    related_alerts holds the candidate SecurityAlert rows.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    correlation_id: str
    related_alerts: List[Any] = Field(default_factory=list)
    correlation_score: int = 0
    should_escalate: bool = False
    escalation_reason: Optional[str] = None
    patterns: List[str] = Field(default_factory=list)


class TimeSpan(BaseModel):
    start: datetime
    end: datetime


class CorrelationGroupSummary(BaseModel):
    total_alerts: int
    time_span: TimeSpan
    severity_breakdown: Dict[str, int]
    type_breakdown: Dict[str, int]
    affected_users: List[str]
    affected_ips: List[str]


class CorrelationGroupAnalysis(BaseModel):
    correlation_id: str
    summary: CorrelationGroupSummary
    patterns: List[str]
    risk_score: int
    recommendations: List[str]


class MergeResult(BaseModel):
    new_correlation_id: str
    affected_alerts: int
