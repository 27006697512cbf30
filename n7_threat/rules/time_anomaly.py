from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.alert import Severity
from ..schemas.event import EventContext, SecurityEventType
from .base import (
    ConditionType,
    DetectionRule,
    RuleConfig,
    RuleEvaluationResult,
    SuggestedAction,
    belongs_to,
)


class HourRange(BaseModel):
    """[start, end) in whole hours; end < start wraps past midnight."""
    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    def contains(self, hour: int) -> bool:
        if self.end >= self.start:
            return self.start <= hour < self.end
        return hour >= self.start or hour < self.end


class TimeAnomalyConfig(RuleConfig):
    # When set, logins outside these hours match
    allowed_hours: Optional[HourRange] = None
    # 0 is Sunday
    allowed_days: Optional[List[int]] = None
    # IANA zone name; naive UTC timestamps are converted before reading the hour
    timezone: Optional[str] = None
    check_user_pattern: bool = True
    pattern_learning_days: int = 30
    suspicious_hours: HourRange = Field(default_factory=lambda: HourRange(start=0, end=6))


class TimeAnomalyRule(DetectionRule):
    """
    Time-based Anomaly Detection.
    Successful logins outside allowed hours or days, or inside the suspicious
    hours when the user has no history of logging in at that hour.
    """

    rule_type = "time_anomaly"
    default_name = "Time-based Anomaly Detection"
    default_description = "Detects logins at unusual times or outside business hours"
    default_severity = Severity.MEDIUM
    default_tags = ["time-anomaly", "business-hours", "authentication"]
    condition_type = ConditionType.TIME_BASED
    config_model = TimeAnomalyConfig

    config: TimeAnomalyConfig

    def _local(self, timestamp: datetime) -> datetime:
        if not self.config.timezone:
            return timestamp
        return timestamp.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(self.config.timezone))

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if context.event_type != SecurityEventType.LOGIN_SUCCESS:
            return RuleEvaluationResult.no_match()

        local = self._local(context.timestamp)
        hour = local.hour
        day = (local.weekday() + 1) % 7

        allowed_hours = self.config.allowed_hours
        if allowed_hours is not None and not allowed_hours.contains(hour):
            return self.match(
                severity=Severity.HIGH,
                score=80,
                reason=f"Login outside allowed hours ({allowed_hours.start}:00-{allowed_hours.end}:00)",
                evidence={"hour": hour, "allowed_hours": allowed_hours.model_dump()},
                suggested_actions=[SuggestedAction.REQUIRE_2FA, SuggestedAction.INCREASE_MONITORING],
            )

        if self.config.allowed_days is not None and day not in self.config.allowed_days:
            return self.match(
                severity=Severity.MEDIUM,
                score=70,
                reason="Login on non-business day",
                evidence={"day": day, "allowed_days": list(self.config.allowed_days)},
                suggested_actions=[SuggestedAction.REQUIRE_2FA],
            )

        suspicious = self.config.suspicious_hours
        if not suspicious.contains(hour):
            return RuleEvaluationResult.no_match()

        if self.config.check_user_pattern and context.user_id and context.recent_events:
            if self._is_usual_hour(context, hour):
                return RuleEvaluationResult.no_match()
            return self.match(
                severity=Severity.MEDIUM,
                score=60,
                reason=f"Login at unusual hour for this user: {hour}:00",
                evidence={
                    "hour": hour,
                    "suspicious_hours": suspicious.model_dump(),
                    "user_id": context.user_id,
                },
                suggested_actions=[SuggestedAction.REQUIRE_2FA],
            )

        return self.match(
            severity=Severity.LOW,
            score=50,
            reason=f"Login during suspicious hours ({hour}:00)",
            evidence={"hour": hour, "suspicious_hours": suspicious.model_dump()},
            suggested_actions=[SuggestedAction.INCREASE_MONITORING],
        )

    def _is_usual_hour(self, context: EventContext, hour: int) -> bool:
        learning_cutoff = context.timestamp - timedelta(days=self.config.pattern_learning_days)
        return any(
            self._local(e.timestamp).hour == hour
            for e in context.recent_events
            if e.event_type == SecurityEventType.LOGIN_SUCCESS
            and belongs_to(e, context.user_id)
            and e.timestamp >= learning_cutoff
        )

    def validate(self) -> bool:
        cfg = self.config
        hours = [cfg.suspicious_hours]
        if cfg.allowed_hours is not None:
            hours.append(cfg.allowed_hours)
        return (
            cfg.pattern_learning_days > 0
            and all(0 <= h.start <= 23 and 0 <= h.end <= 23 for h in hours)
            and all(0 <= d <= 6 for d in cfg.allowed_days or [])
        )

    def get_description(self) -> str:
        return (
            "Detects time-based anomalies including logins outside business hours "
            "and unusual login times for users"
        )
