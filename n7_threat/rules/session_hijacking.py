from typing import List, Literal, Optional

from ..schemas.alert import Severity
from ..schemas.event import EventContext, HistoricalEvent
from .base import (
    ConditionType,
    DetectionRule,
    RuleConfig,
    RuleEvaluationResult,
    SuggestedAction,
    cutoff,
)


def _session_of(event: HistoricalEvent) -> Optional[str]:
    return event.session_id or event.metadata.get("session_id")


class SessionHijackingConfig(RuleConfig):
    patterns: List[str] = ["ip-change", "user-agent-change", "geo-jump"]
    match_type: Literal["any", "all"] = "any"
    lookback_minutes: int = 60
    check_ip_change: bool = True
    check_user_agent_change: bool = True
    check_geo_jump: bool = True
    max_session_ip_changes: int = 2


class SessionHijackingRule(DetectionRule):
    """
    Session Hijacking Detection.
    Inspects the events of one session for IP churn, a changed user agent
    or a country change. Checks run in that order; the first hit wins.
    """

    rule_type = "session_hijacking"
    default_name = "Session Hijacking Detection"
    default_description = "Detects potential session hijacking attempts"
    default_severity = Severity.CRITICAL
    default_tags = ["session-hijacking", "session-security", "authentication"]
    condition_type = ConditionType.PATTERN
    config_model = SessionHijackingConfig

    config: SessionHijackingConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        session_id = context.session_id or context.metadata.get("session_id")
        if not session_id or not context.recent_events:
            return RuleEvaluationResult.no_match()

        since = cutoff(context, self.config.lookback_minutes)
        events = sorted(
            (e for e in context.recent_events if _session_of(e) == session_id and e.timestamp >= since),
            key=lambda e: e.timestamp,
        )
        if len(events) < 2:
            return RuleEvaluationResult.no_match()

        if self.config.check_ip_change:
            result = self._check_ip_changes(session_id, events)
            if result.matched:
                return result

        if self.config.check_user_agent_change:
            result = self._check_user_agent_change(session_id, events)
            if result.matched:
                return result

        if self.config.check_geo_jump:
            result = self._check_geo_jump(session_id, events)
            if result.matched:
                return result

        return RuleEvaluationResult.no_match()

    def _check_ip_changes(self, session_id: str, events: List[HistoricalEvent]) -> RuleEvaluationResult:
        seen = set()
        changes = []
        last_ip = None
        for event in events:
            if not event.ip_address:
                continue
            seen.add(event.ip_address)
            if last_ip and last_ip != event.ip_address:
                changes.append(f"{last_ip} -> {event.ip_address}")
            last_ip = event.ip_address

        count = max(0, len(seen) - 1)
        if count < self.config.max_session_ip_changes:
            return RuleEvaluationResult.no_match()

        return self.match(
            severity=Severity.CRITICAL,
            score=95,
            reason=f"Session hijacking suspected: {count} IP changes detected in session",
            evidence={"session_id": session_id, "ip_changes": changes, "total_changes": count},
            suggested_actions=[
                SuggestedAction.INVALIDATE_SESSIONS,
                SuggestedAction.REQUIRE_2FA,
                SuggestedAction.BLOCK_IP,
            ],
        )

    def _check_user_agent_change(self, session_id: str, events: List[HistoricalEvent]) -> RuleEvaluationResult:
        agents = [e.user_agent or e.metadata.get("user_agent") for e in events]
        agents = [a for a in agents if a]
        if len(set(agents)) <= 1:
            return RuleEvaluationResult.no_match()

        return self.match(
            severity=Severity.HIGH,
            score=90,
            reason="Session hijacking suspected: User-Agent changed during session",
            evidence={
                "session_id": session_id,
                "original_user_agent": agents[0],
                "new_user_agent": agents[-1],
            },
            suggested_actions=[SuggestedAction.INVALIDATE_SESSIONS, SuggestedAction.REQUIRE_2FA],
        )

    def _check_geo_jump(self, session_id: str, events: List[HistoricalEvent]) -> RuleEvaluationResult:
        locations = [
            {"country": e.metadata["country"], "timestamp": e.timestamp.isoformat(), "ip": e.ip_address}
            for e in events
            if e.metadata.get("country")
        ]
        if len({loc["country"] for loc in locations}) <= 1:
            return RuleEvaluationResult.no_match()

        minutes = (events[-1].timestamp - events[0].timestamp).total_seconds() / 60
        return self.match(
            severity=Severity.HIGH,
            score=85,
            reason="Session hijacking suspected: Impossible geographic jump detected",
            evidence={"session_id": session_id, "locations": locations, "time_minutes": round(minutes, 1)},
            suggested_actions=[SuggestedAction.INVALIDATE_SESSIONS, SuggestedAction.REQUIRE_2FA],
        )

    def validate(self) -> bool:
        return self.config.lookback_minutes > 0 and self.config.max_session_ip_changes > 0

    def get_description(self) -> str:
        return "Detects session hijacking through IP changes, User-Agent changes, and geographic anomalies"
