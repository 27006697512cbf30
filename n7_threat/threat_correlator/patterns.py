"""
Scoring and classification over groups of alerts.

Pure functions: they read alert attributes (type, severity, user_id,
user_email, ip_address, session_id, rule_id, created_at) and never touch
storage, so they work on ORM rows and plain test doubles alike.
"""
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Sequence

from ..schemas.alert import AlertType, CorrelationGroupSummary, Severity, TimeSpan

# Pairwise weights, most specific shared attribute first
PAIR_WEIGHTS = {
    "session_id": 40,
    "user_id": 30,
    "ip_address": 25,
    "rule_id": 20,
    "severity": 15,
    "type": 15,
}

BRUTE_FORCE_ATTACK = "brute_force_attack"
DISTRIBUTED_ATTACK = "distributed_attack"
RAPID_FIRE_ATTACK = "rapid_fire_attack"
ACCOUNT_TAKEOVER_ATTEMPT = "account_takeover_attempt"
CREDENTIAL_STUFFING = "credential_stuffing"
REPEATED_POLICY_VIOLATIONS = "repeated_policy_violations"

DANGEROUS_PATTERNS = (ACCOUNT_TAKEOVER_ATTEMPT, CREDENTIAL_STUFFING, BRUTE_FORCE_ATTACK)

RAPID_FIRE_WINDOW = timedelta(seconds=60)

_FAILED_TYPES = (AlertType.MULTIPLE_FAILED_ATTEMPTS.value, AlertType.BRUTE_FORCE_ATTEMPT.value)

SEVERITY_POINTS = {
    Severity.CRITICAL.value: 25,
    Severity.HIGH.value: 15,
    Severity.MEDIUM.value: 8,
    Severity.LOW.value: 3,
}

PATTERN_POINTS = {
    ACCOUNT_TAKEOVER_ATTEMPT: 30,
    DISTRIBUTED_ATTACK: 25,
    CREDENTIAL_STUFFING: 25,
    BRUTE_FORCE_ATTACK: 20,
    RAPID_FIRE_ATTACK: 15,
    REPEATED_POLICY_VIOLATIONS: 10,
}


def _value(field: Any) -> Any:
    return getattr(field, "value", field)


def pair_score(alert: Any, other: Any) -> int:
    score = 0
    for attr, weight in PAIR_WEIGHTS.items():
        mine = _value(getattr(alert, attr, None))
        if mine and mine == _value(getattr(other, attr, None)):
            score += weight
    return score


def correlation_score(alert: Any, candidates: Iterable[Any]) -> int:
    """Strength of the single best match, clamped to [0, 100]."""
    best = max((pair_score(alert, c) for c in candidates), default=0)
    return max(0, min(100, best))


def _has_rapid_fire(alerts: Sequence[Any], minimum: int = 3) -> bool:
    times = sorted(a.created_at for a in alerts if a.created_at is not None)
    start = 0
    for end in range(len(times)):
        while times[end] - times[start] > RAPID_FIRE_WINDOW:
            start += 1
        if end - start + 1 >= minimum:
            return True
    return False


def detect_patterns(alerts: Sequence[Any]) -> List[str]:
    """Named attack patterns present in the group. Each is checked independently."""
    types = Counter(_value(a.type) for a in alerts)
    failed = sum(types[t] for t in _FAILED_TYPES)
    patterns = []

    if failed >= 2:
        patterns.append(BRUTE_FORCE_ATTACK)

    ips_by_user = defaultdict(set)
    users_by_ip = defaultdict(set)
    for a in alerts:
        user = a.user_id or a.user_email
        if a.user_id and a.ip_address:
            ips_by_user[a.user_id].add(a.ip_address)
        if a.ip_address and user:
            users_by_ip[a.ip_address].add(user)

    if any(len(ips) >= 3 for ips in ips_by_user.values()):
        patterns.append(DISTRIBUTED_ATTACK)

    if _has_rapid_fire(alerts):
        patterns.append(RAPID_FIRE_ATTACK)

    if (
        types[AlertType.SUSPICIOUS_LOGIN.value]
        and types[AlertType.ANOMALY_DETECTED.value]
        and failed
    ):
        patterns.append(ACCOUNT_TAKEOVER_ATTEMPT)

    if any(len(users) >= 5 for users in users_by_ip.values()):
        patterns.append(CREDENTIAL_STUFFING)

    if types[AlertType.POLICY_VIOLATION.value] >= 3:
        patterns.append(REPEATED_POLICY_VIOLATIONS)

    return patterns


def escalation_reasons(
        alerts: Sequence[Any],
        patterns: Sequence[str],
        critical_count: int,
        high_count: int,
        total_count: int,
) -> List[str]:
    """Every escalation trigger that fires for the group, in a fixed order."""
    severities = Counter(_value(a.severity) for a in alerts)
    reasons = []

    critical = severities[Severity.CRITICAL.value]
    if critical >= critical_count:
        reasons.append(f"{critical} critical alerts in correlation group")

    high = severities[Severity.HIGH.value]
    if high >= high_count:
        reasons.append(f"{high} high severity alerts in correlation group")

    if len(alerts) >= total_count:
        reasons.append(f"{len(alerts)} total alerts in correlation group")

    dangerous = [p for p in patterns if p in DANGEROUS_PATTERNS]
    if dangerous:
        reasons.append(f"Dangerous pattern detected: {', '.join(dangerous)}")

    return reasons


def breakdown(alerts: Sequence[Any], attr: str) -> Dict[str, int]:
    return dict(Counter(str(_value(getattr(a, attr))) for a in alerts))


def summarize(alerts: Sequence[Any]) -> CorrelationGroupSummary:
    created = [a.created_at for a in alerts]
    return CorrelationGroupSummary(
        total_alerts=len(alerts),
        time_span=TimeSpan(start=min(created), end=max(created)),
        severity_breakdown=breakdown(alerts, "severity"),
        type_breakdown=breakdown(alerts, "type"),
        affected_users=sorted({a.user_id for a in alerts if a.user_id}),
        affected_ips=sorted({a.ip_address for a in alerts if a.ip_address}),
    )


def risk_score(alerts: Sequence[Any], patterns: Sequence[str]) -> int:
    score = sum(SEVERITY_POINTS.get(_value(a.severity), 0) for a in alerts)
    score += sum(PATTERN_POINTS.get(p, 5) for p in patterns)

    created = [a.created_at for a in alerts]
    span_minutes = (max(created) - min(created)).total_seconds() / 60
    # Alerts packed into a few minutes weigh more
    score += max(0.0, 20 - span_minutes)

    return min(100, round(score))


def recommendations(summary: CorrelationGroupSummary, patterns: Sequence[str], risk: int) -> List[str]:
    items = []

    if risk >= 80:
        items += [
            "IMMEDIATE ACTION REQUIRED: Initiate incident response procedure",
            "Block affected IP addresses temporarily",
            "Force password reset for affected users",
        ]

    if ACCOUNT_TAKEOVER_ATTEMPT in patterns:
        items += [
            "Enable multi-factor authentication for affected accounts",
            "Review recent account activity for unauthorized access",
        ]

    if DISTRIBUTED_ATTACK in patterns:
        items += [
            "Implement geographic-based access restrictions",
            "Consider implementing CAPTCHA for login attempts",
        ]

    if CREDENTIAL_STUFFING in patterns:
        items += [
            "Implement rate limiting per IP address",
            "Check user credentials against known breach databases",
        ]

    if BRUTE_FORCE_ATTACK in patterns:
        items += [
            "Implement progressive delays for failed login attempts",
            "Consider implementing account lockout policies",
        ]

    if summary.severity_breakdown.get(Severity.CRITICAL.value, 0) >= 2:
        items += [
            "Escalate to security team immediately",
            "Preserve all logs for forensic analysis",
        ]

    if len(summary.affected_users) > 10:
        items += [
            "Consider system-wide security announcement",
            "Review and update security policies",
        ]

    return list(dict.fromkeys(items))
