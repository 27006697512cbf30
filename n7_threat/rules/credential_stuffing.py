from typing import List, Literal

from ..schemas.alert import Severity
from ..schemas.event import EventContext, SecurityEventType
from .base import (
    ConditionType,
    DetectionRule,
    RuleConfig,
    RuleEvaluationResult,
    SuggestedAction,
    cutoff,
)

LOGIN_EVENTS = (SecurityEventType.LOGIN_FAILED, SecurityEventType.LOGIN_SUCCESS)


class CredentialStuffingConfig(RuleConfig):
    patterns: List[str] = ["multiple-users-same-ip", "rapid-sequential", "bot-pattern"]
    match_type: Literal["any", "all"] = "any"
    lookback_minutes: int = 10
    min_unique_users: int = 5
    # Milliseconds between consecutive attempts counted as machine speed
    max_time_between_attempts: int = 2000
    suspicious_user_agents: List[str] = ["python", "curl", "wget", "scrapy"]


class CredentialStuffingRule(DetectionRule):
    """
    Credential Stuffing Detection.
    Many distinct accounts tried from one IP in a short window.
    """

    rule_type = "credential_stuffing"
    default_name = "Credential Stuffing Detection"
    default_description = "Detects automated login attempts with stolen credentials"
    default_severity = Severity.CRITICAL
    default_tags = ["credential-stuffing", "bot", "authentication"]
    condition_type = ConditionType.PATTERN
    config_model = CredentialStuffingConfig

    config: CredentialStuffingConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if not context.ip_address or not context.recent_events:
            return RuleEvaluationResult.no_match()

        since = cutoff(context, self.config.lookback_minutes)
        attempts = sorted(
            (
                e for e in context.recent_events
                if e.ip_address == context.ip_address
                and e.timestamp >= since
                and e.event_type in LOGIN_EVENTS
            ),
            key=lambda e: e.timestamp,
        )

        users: List[str] = []
        for event in attempts:
            email = event.email or event.metadata.get("email")
            if email and email not in users:
                users.append(email)

        if len(users) < self.config.min_unique_users:
            return RuleEvaluationResult.no_match()

        limit_seconds = self.config.max_time_between_attempts / 1000
        rapid_sequential = sum(
            1 for prev, curr in zip(attempts, attempts[1:])
            if (curr.timestamp - prev.timestamp).total_seconds() < limit_seconds
        )

        return self.match(
            severity=Severity.CRITICAL,
            score=len(users) / 10 * 50 + rapid_sequential / len(attempts) * 50,
            reason=(
                f"Credential stuffing detected: {len(users)} different users attempted "
                f"from IP {context.ip_address}"
            ),
            evidence={
                "ip_address": context.ip_address,
                "unique_users": len(users),
                "total_attempts": len(attempts),
                "rapid_sequential_attempts": rapid_sequential,
                "users_list": users[:10],
            },
            suggested_actions=[SuggestedAction.BLOCK_IP, SuggestedAction.INCREASE_MONITORING],
        )

    def validate(self) -> bool:
        return (
            self.config.lookback_minutes > 0
            and self.config.min_unique_users > 0
            and self.config.max_time_between_attempts > 0
        )

    def get_description(self) -> str:
        return (
            f"Detects credential stuffing attacks when {self.config.min_unique_users} or more users "
            f"are attempted from the same IP within {self.config.lookback_minutes} minutes"
        )
