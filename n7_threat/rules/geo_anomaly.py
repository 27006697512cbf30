from datetime import timedelta
from typing import List, Optional

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


class GeoAnomalyConfig(RuleConfig):
    blocked_countries: List[str] = ["KP", "IR"]
    # When set, only these countries are allowed
    allowed_countries: Optional[List[str]] = None
    max_distance_km: int = 5000
    check_velocity: bool = True
    check_new_country: bool = True
    user_pattern_learning: bool = True
    learning_period_days: int = 30


class GeoAnomalyRule(DetectionRule):
    """
    Geographic Anomaly Detection.
    Responsibility: flag successful logins from blocked, non-allowed or
    previously unseen countries. Checks run in priority order and the first
    one that matches is returned:

    1. block-list        CRITICAL / 100
    2. allow-list        HIGH / 85
    3. new country       MEDIUM / 65 (needs a user id and some history)
    """

    rule_type = "geo_anomaly"
    default_name = "Geographic Anomaly Detection"
    default_description = "Detects logins from unusual or restricted geographic locations"
    default_severity = Severity.HIGH
    default_tags = ["geo-anomaly", "location", "authentication"]
    condition_type = ConditionType.GEO_BASED
    config_model = GeoAnomalyConfig

    config: GeoAnomalyConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if context.event_type != SecurityEventType.LOGIN_SUCCESS:
            return RuleEvaluationResult.no_match()

        country = context.country
        if not context.location or not country:
            return RuleEvaluationResult.no_match()

        if country in self.config.blocked_countries:
            return self.match(
                severity=Severity.CRITICAL,
                score=100,
                reason=f"Login attempt from blocked country: {country}",
                evidence={"country": country, "blocked_countries": list(self.config.blocked_countries)},
                suggested_actions=[SuggestedAction.BLOCK_IP, SuggestedAction.INVALIDATE_SESSIONS],
            )

        if self.config.allowed_countries is not None and country not in self.config.allowed_countries:
            return self.match(
                severity=Severity.HIGH,
                score=85,
                reason=f"Login attempt from non-allowed country: {country}",
                evidence={"country": country, "allowed_countries": list(self.config.allowed_countries)},
                suggested_actions=[SuggestedAction.REQUIRE_2FA, SuggestedAction.INCREASE_MONITORING],
            )

        if self.config.check_new_country and context.user_id and context.recent_events:
            return self._check_new_country(context, country)

        return RuleEvaluationResult.no_match()

    def _check_new_country(self, context: EventContext, country: str) -> RuleEvaluationResult:
        # Callers may pass the full history, so the learning window is applied here
        learning_cutoff = context.timestamp - timedelta(days=self.config.learning_period_days)
        history = [e for e in context.recent_events if belongs_to(e, context.user_id)]
        if not history:
            return RuleEvaluationResult.no_match()

        in_window = [e for e in history if e.timestamp >= learning_cutoff]
        known_countries = {e.metadata["country"] for e in in_window if e.metadata.get("country")}

        if in_window and not known_countries:
            # Activity without geo data says nothing about the location
            return RuleEvaluationResult.no_match()

        if not in_window:
            return self._new_country_match(
                context,
                country,
                known_countries,
                has_recent_activity=False,
                reason=(
                    f"First login after {self.config.learning_period_days} days of inactivity "
                    f"from country: {country}"
                ),
            )

        if country not in known_countries:
            return self._new_country_match(
                context,
                country,
                known_countries,
                has_recent_activity=True,
                reason=f"First login from new country: {country}",
            )

        return RuleEvaluationResult.no_match()

    def _new_country_match(self, context, country, known_countries, has_recent_activity, reason):
        return self.match(
            severity=Severity.MEDIUM,
            score=65,
            reason=reason,
            evidence={
                "new_country": country,
                "known_countries": sorted(known_countries),
                "user_id": context.user_id,
                "has_recent_activity": has_recent_activity,
            },
            suggested_actions=[SuggestedAction.REQUIRE_2FA],
        )

    def validate(self) -> bool:
        return self.config.learning_period_days > 0

    def get_description(self) -> str:
        return (
            "Detects geographic anomalies including blocked countries, unusual locations, "
            "and new countries for users"
        )
