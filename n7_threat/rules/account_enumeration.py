import re
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

_NUMBER = re.compile(r"\d+")


def levenshtein_distance(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1.0 for identical strings, falling with edit distance relative to the longer one."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(a, b)) / longer


def sequential_count(usernames: List[str]) -> int:
    """Adjacent pairs like user1 -> user2 that differ only by an incremented number."""
    count = 0
    for prev, curr in zip(usernames, usernames[1:]):
        prev_num, curr_num = _NUMBER.search(prev), _NUMBER.search(curr)
        if not prev_num or not curr_num:
            continue
        if (
            int(curr_num.group()) == int(prev_num.group()) + 1
            and _NUMBER.sub("", prev, count=1) == _NUMBER.sub("", curr, count=1)
        ):
            count += 1
    return count


def mean_similarity(usernames: List[str]) -> float:
    if len(usernames) < 2:
        return 0.0
    scores = [
        similarity(usernames[i], usernames[j])
        for i in range(len(usernames) - 1)
        for j in range(i + 1, len(usernames))
    ]
    return sum(scores) / len(scores)


class AccountEnumerationConfig(RuleConfig):
    patterns: List[str] = ["sequential-usernames", "similar-usernames", "timing-analysis"]
    match_type: Literal["any", "all"] = "any"
    lookback_minutes: int = 15
    min_attempts: int = 5
    sequential_threshold: int = 3
    similarity_threshold: float = 0.8


class AccountEnumerationRule(DetectionRule):
    """
    Account Enumeration Detection.
    Failed logins from one IP probing usernames that are sequential
    (user1, user2, ...) or near-identical.
    """

    rule_type = "account_enumeration"
    default_name = "Account Enumeration Detection"
    default_description = "Detects attempts to enumerate valid user accounts"
    default_severity = Severity.HIGH
    default_tags = ["account-enumeration", "reconnaissance", "authentication"]
    condition_type = ConditionType.PATTERN
    config_model = AccountEnumerationConfig

    config: AccountEnumerationConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if not context.ip_address or not context.recent_events:
            return RuleEvaluationResult.no_match()

        since = cutoff(context, self.config.lookback_minutes)
        failed = sorted(
            (
                e for e in context.recent_events
                if e.ip_address == context.ip_address
                and e.timestamp >= since
                and e.event_type == SecurityEventType.LOGIN_FAILED
            ),
            key=lambda e: e.timestamp,
        )
        if len(failed) < self.config.min_attempts:
            return RuleEvaluationResult.no_match()

        usernames = [
            name for name in (
                e.email or e.username or e.metadata.get("email") or e.metadata.get("username")
                for e in failed
            )
            if name
        ]

        sequential = sequential_count(usernames)
        if sequential >= self.config.sequential_threshold:
            return self.match(
                severity=Severity.HIGH,
                score=85,
                reason=(
                    f"Account enumeration detected: Sequential username pattern "
                    f"from IP {context.ip_address}"
                ),
                evidence={
                    "ip_address": context.ip_address,
                    "attempt_count": len(failed),
                    "sequential_count": sequential,
                    "sample_usernames": usernames[:5],
                },
                suggested_actions=[SuggestedAction.BLOCK_IP, SuggestedAction.INCREASE_MONITORING],
            )

        similarity_score = mean_similarity(usernames)
        if similarity_score >= self.config.similarity_threshold:
            return self.match(
                severity=Severity.HIGH,
                score=80,
                reason=(
                    f"Account enumeration detected: Similar username patterns "
                    f"from IP {context.ip_address}"
                ),
                evidence={
                    "ip_address": context.ip_address,
                    "attempt_count": len(failed),
                    "similarity_score": round(similarity_score, 3),
                    "sample_usernames": usernames[:5],
                },
                suggested_actions=[SuggestedAction.BLOCK_IP, SuggestedAction.INCREASE_MONITORING],
            )

        return RuleEvaluationResult.no_match()

    def validate(self) -> bool:
        return (
            self.config.lookback_minutes > 0
            and self.config.min_attempts > 0
            and self.config.sequential_threshold > 0
            and 0 < self.config.similarity_threshold <= 1
        )

    def get_description(self) -> str:
        return "Detects account enumeration attempts through sequential or similar username patterns"
