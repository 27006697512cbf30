from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.alert import Severity
from ..schemas.event import EventContext, HistoricalEvent, SecurityEventType
from .base import (
    ConditionType,
    DetectionRule,
    RuleConfig,
    RuleEvaluationResult,
    SuggestedAction,
    cutoff,
)


class SeverityThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    low: int = 3
    medium: int = 5
    high: int = 10
    critical: int = 20


class BruteForceConfig(RuleConfig):
    threshold: int = 5
    time_window_minutes: int = 15
    check_ip_based: bool = True
    check_user_based: bool = True
    severity_thresholds: SeverityThresholds = Field(default_factory=SeverityThresholds)


class BruteForceRule(DetectionRule):
    """
    Brute Force Detection.
    Counts failed logins per source IP and per targeted account inside the
    time window and tiers the severity by attempt count.
    """

    rule_type = "brute_force"
    default_name = "Brute Force Detection"
    default_description = "Detects brute force attacks based on failed login attempts"
    default_severity = Severity.HIGH
    default_tags = ["brute-force", "authentication", "login"]
    condition_type = ConditionType.THRESHOLD
    config_model = BruteForceConfig

    config: BruteForceConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if context.event_type != SecurityEventType.LOGIN_FAILED:
            return RuleEvaluationResult.no_match()

        results: List[RuleEvaluationResult] = []

        if self.config.check_ip_based and context.ip_address:
            ip_result = self._check_ip_based(context)
            if ip_result.matched:
                results.append(ip_result)

        if self.config.check_user_based and (context.user_id or context.email):
            user_result = self._check_user_based(context)
            if user_result.matched:
                results.append(user_result)

        if not results:
            return RuleEvaluationResult.no_match()

        # First result wins on equal severity (IP check runs first)
        most_severe = results[0]
        for result in results[1:]:
            if result.severity.rank > most_severe.severity.rank:
                most_severe = result
        return most_severe

    def _failed_in_window(self, context: EventContext) -> List[HistoricalEvent]:
        since = cutoff(context, self.config.time_window_minutes)
        return [
            e for e in context.recent_events
            if e.event_type == SecurityEventType.LOGIN_FAILED and e.timestamp >= since
        ]

    def _check_ip_based(self, context: EventContext) -> RuleEvaluationResult:
        attempts = len([e for e in self._failed_in_window(context) if e.ip_address == context.ip_address])
        if attempts < self.config.threshold:
            return RuleEvaluationResult.no_match()

        severity = self._severity_for(attempts)
        return self.match(
            severity=severity,
            score=self._score_for(attempts),
            reason=(
                f"IP {context.ip_address} has {attempts} failed login attempts "
                f"in {self.config.time_window_minutes} minutes"
            ),
            evidence={
                "ip_address": context.ip_address,
                "failed_attempts": attempts,
                "time_window": self.config.time_window_minutes,
                "threshold": self.config.threshold,
            },
            suggested_actions=self._actions_for(severity, "ip"),
        )

    def _check_user_based(self, context: EventContext) -> RuleEvaluationResult:
        def targets_user(event: HistoricalEvent) -> bool:
            return bool(
                (context.email and event.email == context.email)
                or (context.user_id and event.user_id == context.user_id)
            )

        attempts = [e for e in self._failed_in_window(context) if targets_user(e)]
        if len(attempts) < self.config.threshold:
            return RuleEvaluationResult.no_match()

        unique_ips = sorted({e.ip_address for e in attempts if e.ip_address})
        severity = self._severity_for(len(attempts))
        # Attempts spread over many sources are worse than a single noisy client
        if len(unique_ips) > 3:
            severity = severity.raised()

        user = context.email or context.user_id
        return self.match(
            severity=severity,
            score=self._score_for(len(attempts)),
            reason=(
                f"User {user} has {len(attempts)} failed login attempts from {len(unique_ips)} "
                f"different IPs in {self.config.time_window_minutes} minutes"
            ),
            evidence={
                "user": user,
                "failed_attempts": len(attempts),
                "unique_ips": len(unique_ips),
                "ip_addresses": unique_ips,
                "time_window": self.config.time_window_minutes,
                "threshold": self.config.threshold,
            },
            suggested_actions=self._actions_for(severity, "user"),
        )

    def _severity_for(self, attempts: int) -> Severity:
        tiers = self.config.severity_thresholds
        if attempts >= tiers.critical:
            return Severity.CRITICAL
        if attempts >= tiers.high:
            return Severity.HIGH
        if attempts >= tiers.medium:
            return Severity.MEDIUM
        return Severity.LOW

    def _score_for(self, attempts: int) -> float:
        return min(100.0, attempts / self.config.severity_thresholds.critical * 100)

    @staticmethod
    def _actions_for(severity: Severity, kind: str) -> List[SuggestedAction]:
        actions = []
        if kind == "ip":
            if severity == Severity.CRITICAL:
                actions.append(SuggestedAction.BLOCK_IP)
            if severity.rank >= Severity.HIGH.rank:
                actions.append(SuggestedAction.INCREASE_MONITORING)
        else:
            if severity.rank >= Severity.HIGH.rank:
                actions.append(SuggestedAction.REQUIRE_2FA)
            if severity == Severity.CRITICAL:
                actions.append(SuggestedAction.INVALIDATE_SESSIONS)
        return actions

    def validate(self) -> bool:
        cfg = self.config
        tiers = cfg.severity_thresholds
        return (
            cfg.threshold > 0
            and cfg.time_window_minutes > 0
            and (cfg.check_ip_based or cfg.check_user_based)
            and tiers.low > 0
            and tiers.medium >= tiers.low
            and tiers.high >= tiers.medium
            and tiers.critical >= tiers.high
        )

    def get_description(self) -> str:
        checks = []
        if self.config.check_ip_based:
            checks.append("IP-based")
        if self.config.check_user_based:
            checks.append("user-based")
        return (
            f"Detects {' and '.join(checks)} brute force attacks when more than {self.config.threshold} "
            f"failed login attempts occur within {self.config.time_window_minutes} minutes"
        )
