import math
from typing import Any, Dict, List, Literal, Optional

from ..schemas.alert import Severity, highest_severity
from ..schemas.event import EventContext, HistoricalEvent, SecurityEventType
from .base import (
    ConditionType,
    DetectionRule,
    RuleConfig,
    RuleEvaluationResult,
    SuggestedAction,
    belongs_to,
    cutoff,
)

EARTH_RADIUS_KM = 6371.0


def haversine_km(origin: Dict[str, float], target: Dict[str, float]) -> float:
    """Great-circle distance between two {lat, lon} points."""
    d_lat = math.radians(target["lat"] - origin["lat"])
    d_lon = math.radians(target["lon"] - origin["lon"])
    lat1 = math.radians(origin["lat"])
    lat2 = math.radians(target["lat"])

    a = math.sin(d_lat / 2) ** 2 + math.sin(d_lon / 2) ** 2 * math.cos(lat1) * math.cos(lat2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _coordinates(location: Any) -> Optional[Dict[str, float]]:
    if not isinstance(location, dict):
        return None
    try:
        return {"lat": float(location["lat"]), "lon": float(location["lon"])}
    except (KeyError, TypeError, ValueError):
        return None


class IpHoppingConfig(RuleConfig):
    patterns: List[str] = ["rapid-ip-change", "geo-impossible", "proxy-pattern"]
    match_type: Literal["any", "all"] = "any"
    lookback_minutes: int = 30
    max_ips_threshold: int = 3
    suspicious_ip_change_minutes: int = 5
    vpn_detection: bool = True
    geo_velocity_check: bool = True
    max_velocity_km_per_hour: float = 1000


class IpHoppingRule(DetectionRule):
    """
    IP Hopping Detection.
    Looks at a user's successful logins for rapid IP changes, physically
    impossible travel and proxy/VPN-like spreads of countries and ASNs.
    """

    rule_type = "ip_hopping"
    default_name = "IP Hopping Detection"
    default_description = "Detects suspicious IP address changes and hopping patterns"
    default_severity = Severity.HIGH
    default_tags = ["ip-hopping", "proxy", "vpn", "authentication"]
    condition_type = ConditionType.PATTERN
    config_model = IpHoppingConfig

    config: IpHoppingConfig

    async def evaluate(self, context: EventContext) -> RuleEvaluationResult:
        if context.event_type != SecurityEventType.LOGIN_SUCCESS:
            return RuleEvaluationResult.no_match()
        if not context.user_id or not context.ip_address or not context.recent_events:
            return RuleEvaluationResult.no_match()

        checks = {
            "rapid-ip-change": self._check_rapid_ip_change,
            "geo-impossible": self._check_impossible_travel,
            "proxy-pattern": self._check_proxy_pattern,
        }

        matches = []
        for pattern in self.config.patterns:
            check = checks.get(pattern)
            if check is None:
                continue
            result = check(context)
            if result.matched:
                if self.config.match_type == "any":
                    return result
                matches.append(result)

        if self.config.match_type == "all" and matches and len(matches) == len(self.config.patterns):
            return self._combine(matches)

        return RuleEvaluationResult.no_match()

    def _user_logins(self, context: EventContext) -> List[HistoricalEvent]:
        since = cutoff(context, self.config.lookback_minutes)
        return sorted(
            (
                e for e in context.recent_events
                if e.event_type == SecurityEventType.LOGIN_SUCCESS
                and belongs_to(e, context.user_id)
                and e.timestamp >= since
                and e.ip_address
            ),
            key=lambda e: e.timestamp,
        )

    def _check_rapid_ip_change(self, context: EventContext) -> RuleEvaluationResult:
        logins = self._user_logins(context)

        ip_addresses: List[str] = []
        for event in logins:
            if event.ip_address not in ip_addresses:
                ip_addresses.append(event.ip_address)

        unique_ips = len(ip_addresses)
        if unique_ips < self.config.max_ips_threshold:
            return RuleEvaluationResult.no_match()

        change_limit = self.config.suspicious_ip_change_minutes * 60
        rapid_changes = sum(
            1 for prev, curr in zip(logins, logins[1:])
            if prev.ip_address != curr.ip_address
            and (curr.timestamp - prev.timestamp).total_seconds() < change_limit
        )

        return self.match(
            severity=Severity.CRITICAL if unique_ips >= 5 else Severity.HIGH,
            score=unique_ips / 10 * 100 + rapid_changes * 10,
            reason=(
                f"User logged in from {unique_ips} different IPs within {self.config.lookback_minutes} "
                f"minutes with {rapid_changes} rapid IP changes"
            ),
            evidence={
                "user_id": context.user_id,
                "unique_ips": unique_ips,
                "rapid_changes": rapid_changes,
                "ip_addresses": ip_addresses,
                "time_window": self.config.lookback_minutes,
            },
            suggested_actions=[SuggestedAction.REQUIRE_2FA, SuggestedAction.INCREASE_MONITORING],
        )

    def _check_impossible_travel(self, context: EventContext) -> RuleEvaluationResult:
        if not self.config.geo_velocity_check:
            return RuleEvaluationResult.no_match()

        logins = self._user_logins(context)
        logins.append(HistoricalEvent(
            event_type=SecurityEventType.LOGIN_SUCCESS,
            timestamp=context.timestamp,
            user_id=context.user_id,
            ip_address=context.ip_address,
            metadata=context.metadata,
        ))

        for origin, target in zip(logins, logins[1:]):
            if origin.ip_address == target.ip_address:
                continue
            start = _coordinates(origin.metadata.get("location"))
            end = _coordinates(target.metadata.get("location"))
            if start is None or end is None:
                continue

            hours = (target.timestamp - origin.timestamp).total_seconds() / 3600
            if hours <= 0:
                continue

            distance = haversine_km(start, end)
            velocity = distance / hours
            if velocity > self.config.max_velocity_km_per_hour:
                return self.match(
                    severity=Severity.CRITICAL,
                    score=95,
                    reason=(
                        f"Impossible travel detected: {round(distance)}km in {round(hours * 60)} "
                        f"minutes ({round(velocity)}km/h)"
                    ),
                    evidence={
                        "from_ip": origin.ip_address,
                        "to_ip": target.ip_address,
                        "from_location": start,
                        "to_location": end,
                        "distance": round(distance),
                        "time_diff_minutes": round(hours * 60),
                        "velocity": round(velocity),
                        "max_velocity": self.config.max_velocity_km_per_hour,
                    },
                    suggested_actions=[
                        SuggestedAction.INVALIDATE_SESSIONS,
                        SuggestedAction.REQUIRE_2FA,
                        SuggestedAction.BLOCK_IP,
                    ],
                )

        return RuleEvaluationResult.no_match()

    def _check_proxy_pattern(self, context: EventContext) -> RuleEvaluationResult:
        if not self.config.vpn_detection:
            return RuleEvaluationResult.no_match()

        logins = self._user_logins(context)
        countries, asns, datacenter_ips = set(), set(), []

        observed = [(e.ip_address, e.metadata) for e in logins]
        observed.append((context.ip_address, context.metadata))
        for ip_address, metadata in observed:
            if metadata.get("country"):
                countries.add(metadata["country"])
            if metadata.get("asn"):
                asns.add(str(metadata["asn"]))
            if metadata.get("is_datacenter") or metadata.get("isDatacenter"):
                datacenter_ips.append(ip_address)

        datacenter_ratio = len(datacenter_ips) / len(observed)
        if len(countries) <= 3 and len(asns) <= 5 and datacenter_ratio <= 0.5:
            return RuleEvaluationResult.no_match()

        return self.match(
            severity=Severity.CRITICAL if datacenter_ratio > 0.8 else Severity.HIGH,
            score=len(countries) * 10 + len(asns) * 5 + datacenter_ratio * 50,
            reason=(
                f"Proxy/VPN pattern detected: {len(countries)} countries, {len(asns)} ASNs, "
                f"{round(datacenter_ratio * 100)}% datacenter IPs"
            ),
            evidence={
                "unique_countries": len(countries),
                "unique_asns": len(asns),
                "datacenter_ratio": datacenter_ratio,
                "datacenter_ips": datacenter_ips,
                "countries": sorted(countries),
                "asns": sorted(asns),
            },
            suggested_actions=[SuggestedAction.REQUIRE_2FA, SuggestedAction.INCREASE_MONITORING],
        )

    def _combine(self, results: List[RuleEvaluationResult]) -> RuleEvaluationResult:
        actions: List[SuggestedAction] = []
        for result in results:
            for action in result.suggested_actions:
                if action not in actions:
                    actions.append(action)

        return self.match(
            severity=highest_severity(r.severity for r in results),
            score=sum(r.score for r in results) / len(results),
            reason="; ".join(r.reason for r in results),
            evidence={
                "combined_patterns": len(results),
                "patterns": [r.evidence for r in results],
            },
            suggested_actions=actions,
        )

    def validate(self) -> bool:
        cfg = self.config
        return (
            len(cfg.patterns) > 0
            and cfg.lookback_minutes > 0
            and cfg.max_ips_threshold > 0
            and cfg.suspicious_ip_change_minutes > 0
            and cfg.max_velocity_km_per_hour > 0
        )

    def get_description(self) -> str:
        return (
            f"Detects IP hopping patterns including {', '.join(self.config.patterns)} "
            f"within {self.config.lookback_minutes} minutes"
        )
