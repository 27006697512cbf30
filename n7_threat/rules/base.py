"""
Detection rule contract.

A rule owns only its configuration and an evaluation function. Evaluation is
side-effect free: any event a rule does not apply to, or any context missing
the fields it needs, yields a non-match rather than an error.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..exceptions import RuleConfigurationError
from ..schemas.alert import Severity
from ..schemas.event import EventContext, HistoricalEvent


class RuleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DEPRECATED = "DEPRECATED"


class ConditionType(str, Enum):
    THRESHOLD = "THRESHOLD"
    PATTERN = "PATTERN"
    TIME_BASED = "TIME_BASED"
    GEO_BASED = "GEO_BASED"


class SuggestedAction(str, Enum):
    BLOCK_IP = "BLOCK_IP"
    REQUIRE_2FA = "REQUIRE_2FA"
    INVALIDATE_SESSIONS = "INVALIDATE_SESSIONS"
    INCREASE_MONITORING = "INCREASE_MONITORING"


class RuleEvaluationResult(BaseModel):
    """Result of evaluating one rule against one event context."""
    matched: bool
    severity: Optional[Severity] = None
    score: Optional[int] = None
    reason: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)
    suggested_actions: List[SuggestedAction] = Field(default_factory=list)

    # Filled in by the rule that produced the result
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def no_match(cls) -> "RuleEvaluationResult":
        return cls(matched=False)


class RuleConfig(BaseModel):
    """
    Base for rule configuration objects.
    Immutable; accepts both snake_case and camelCase keys, ignores unknown ones.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", alias_generator=to_camel, populate_by_name=True)


class DetectionRule(ABC):
    """
    Base class for all threat detection rules.

    Subclasses declare their defaults as class attributes and implement
    evaluate(), validate() and get_description().
    """

    rule_type: ClassVar[str]
    default_name: ClassVar[str]
    default_description: ClassVar[str]
    default_severity: ClassVar[Severity] = Severity.HIGH
    default_tags: ClassVar[List[str]] = []
    condition_type: ClassVar[ConditionType]
    config_model: ClassVar[Type[RuleConfig]]

    def __init__(
            self,
            id: Optional[str] = None,
            name: Optional[str] = None,
            description: Optional[str] = None,
            version: str = "1.0.0",
            status: RuleStatus = RuleStatus.ACTIVE,
            severity: Optional[Severity] = None,
            tags: Optional[List[str]] = None,
            config: Optional[Mapping[str, Any]] = None,
    ):
        self.id = id or f"{self.rule_type}-default"
        self.name = name or self.default_name
        self.description = description or self.default_description
        self.version = version
        self.status = RuleStatus(status)
        self.severity = Severity(severity) if severity else self.default_severity
        self.tags = list(tags) if tags is not None else list(self.default_tags)
        try:
            self.config = self.config_model.model_validate(dict(config or {}))
        except ValidationError as e:
            raise RuleConfigurationError(self.id, str(e)) from e

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    @abstractmethod
    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        """Evaluate the rule against one event. Never raises for missing context."""

    @abstractmethod
    def validate(self) -> bool:
        """Whether the configuration is internally consistent. Checked at load time."""

    @abstractmethod
    def get_description(self) -> str:
        ...

    def match(
            self,
            severity: Severity,
            score: float,
            reason: str,
            evidence: Dict[str, Any],
            suggested_actions: Iterable[SuggestedAction],
    ) -> RuleEvaluationResult:
        return RuleEvaluationResult(
            matched=True,
            severity=severity,
            score=max(0, min(100, round(score))),
            reason=reason,
            evidence=evidence,
            suggested_actions=list(suggested_actions),
            rule_id=self.id,
            rule_name=self.name,
            tags=list(self.tags),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.rule_type,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "status": self.status.value,
            "severity": self.severity.value,
            "condition_type": self.condition_type.value,
            "tags": list(self.tags),
            "config": self.config.model_dump(),
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r} status={self.status.value}>"


# ---------------------------------------------------------------------------
# Helpers shared by rule implementations
# ---------------------------------------------------------------------------

def cutoff(context: EventContext, minutes: float) -> datetime:
    """Start of a look-back window ending at the event's own timestamp."""
    return context.timestamp - timedelta(minutes=minutes)


def belongs_to(event: HistoricalEvent, user_id: Optional[str]) -> bool:
    """Events without a user id are assumed to belong to the context's actor."""
    return event.user_id is None or event.user_id == user_id
