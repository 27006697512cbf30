from datetime import datetime, timedelta

import pytest

from n7_threat.exceptions import RuleConfigurationError
from n7_threat.rules.account_enumeration import AccountEnumerationRule, levenshtein_distance, sequential_count
from n7_threat.rules.base import SuggestedAction
from n7_threat.rules.brute_force import BruteForceRule
from n7_threat.rules.credential_stuffing import CredentialStuffingRule
from n7_threat.rules.ip_hopping import IpHoppingRule, haversine_km
from n7_threat.rules.session_hijacking import SessionHijackingRule
from n7_threat.schemas.alert import Severity
from n7_threat.schemas.event import EventContext, HistoricalEvent, SecurityEventType

NOW = datetime(2026, 3, 2, 12, 0, 0)
ATTACKER_IP = "203.0.113.5"

BERLIN = {"lat": 52.52, "lon": 13.405}
PARIS = {"lat": 48.8566, "lon": 2.3522}
NEW_YORK = {"lat": 40.7128, "lon": -74.006}


def event(event_type=SecurityEventType.LOGIN_FAILED, seconds_ago=0, **kwargs):
    return HistoricalEvent(event_type=event_type, timestamp=NOW - timedelta(seconds=seconds_ago), **kwargs)


def failed_from_ip(count, ip=ATTACKER_IP, **kwargs):
    return [event(seconds_ago=10 * (i + 1), ip_address=ip, **kwargs) for i in range(count)]


# ---------------------------------------------------------------------------
# Brute force
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_brute_force_ignores_successful_logins():
    rule = BruteForceRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=failed_from_ip(25),
    )
    assert (await rule.evaluate(context)).matched is False


@pytest.mark.asyncio
async def test_brute_force_ip_threshold_reached():
    rule = BruteForceRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=failed_from_ip(5),
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.MEDIUM
    assert result.score == 25
    assert result.evidence["failed_attempts"] == 5
    assert result.suggested_actions == []


@pytest.mark.asyncio
async def test_brute_force_critical_ip_attack():
    rule = BruteForceRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=failed_from_ip(20),
    )

    result = await rule.evaluate(context)

    assert result.severity == Severity.CRITICAL
    assert result.score == 100
    assert result.suggested_actions == [SuggestedAction.BLOCK_IP, SuggestedAction.INCREASE_MONITORING]


@pytest.mark.asyncio
async def test_brute_force_below_threshold_or_outside_window():
    rule = BruteForceRule()
    stale = [event(seconds_ago=20 * 60, ip_address=ATTACKER_IP) for _ in range(10)]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=failed_from_ip(4) + stale,
    )
    assert (await rule.evaluate(context)).matched is False


@pytest.mark.asyncio
async def test_brute_force_user_attack_from_many_ips_is_raised():
    rule = BruteForceRule()
    attempts = [
        event(seconds_ago=30 * (i + 1), email="victim@example.com", ip_address=f"198.51.100.{i % 5}")
        for i in range(10)
    ]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        email="victim@example.com",
        ip_address="192.0.2.1",
        recent_events=attempts,
    )

    result = await rule.evaluate(context)

    # 10 attempts is HIGH; five source IPs push it one level up
    assert result.severity == Severity.CRITICAL
    assert result.evidence["unique_ips"] == 5
    assert result.evidence["user"] == "victim@example.com"
    assert result.suggested_actions == [SuggestedAction.REQUIRE_2FA, SuggestedAction.INVALIDATE_SESSIONS]


def test_brute_force_validate_rejects_unordered_tiers():
    assert BruteForceRule().validate() is True
    rule = BruteForceRule(config={"severity_thresholds": {"low": 3, "medium": 2, "high": 10, "critical": 20}})
    assert rule.validate() is False


def test_brute_force_rejects_bad_config_types():
    with pytest.raises(RuleConfigurationError):
        BruteForceRule(config={"threshold": "many"})


# ---------------------------------------------------------------------------
# IP hopping
# ---------------------------------------------------------------------------

def test_haversine_berlin_paris():
    assert 870 < haversine_km(BERLIN, PARIS) < 890


@pytest.mark.asyncio
async def test_rapid_ip_change():
    rule = IpHoppingRule()
    logins = [
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=180, user_id="u1", ip_address="10.0.0.1"),
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=120, user_id="u1", ip_address="10.0.0.2"),
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=60, user_id="u1", ip_address="10.0.0.3"),
    ]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        user_id="u1",
        ip_address="10.0.0.4",
        recent_events=logins,
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.HIGH
    assert result.score == 50
    assert result.evidence["unique_ips"] == 3
    assert result.evidence["rapid_changes"] == 2


@pytest.mark.asyncio
async def test_impossible_travel():
    rule = IpHoppingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        user_id="u1",
        ip_address="10.0.0.2",
        metadata={"location": NEW_YORK},
        recent_events=[
            event(
                SecurityEventType.LOGIN_SUCCESS,
                seconds_ago=600,
                user_id="u1",
                ip_address="10.0.0.1",
                metadata={"location": BERLIN},
            ),
        ],
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.CRITICAL
    assert result.score == 95
    assert result.evidence["time_diff_minutes"] == 10
    assert result.evidence["distance"] > 6000


@pytest.mark.asyncio
async def test_ip_hopping_needs_history():
    rule = IpHoppingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        user_id="u1",
        ip_address="10.0.0.1",
    )
    assert (await rule.evaluate(context)).matched is False


def proxy_context(current_metadata, *history):
    logins = [
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=300 * (i + 1), user_id="u1",
              ip_address=f"10.0.1.{i + 1}", metadata=metadata)
        for i, metadata in enumerate(history)
    ]
    return EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        user_id="u1",
        ip_address="10.0.1.100",
        metadata=current_metadata,
        recent_events=logins,
    )


@pytest.mark.asyncio
async def test_proxy_pattern_many_countries():
    rule = IpHoppingRule(config={"patterns": ["proxy-pattern"]})
    context = proxy_context(
        {"country": "GB"},
        {"country": "DE"}, {"country": "FR"}, {"country": "NL"}, {"country": "US"},
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.HIGH
    assert result.score == 50
    assert result.evidence["unique_countries"] == 5
    assert result.evidence["countries"] == ["DE", "FR", "GB", "NL", "US"]


@pytest.mark.asyncio
async def test_proxy_pattern_datacenter_ips_are_critical():
    rule = IpHoppingRule(config={"patterns": ["proxy-pattern"]})
    context = proxy_context({"is_datacenter": True}, {"is_datacenter": True}, {"isDatacenter": True})

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.CRITICAL
    assert result.score == 50
    assert result.evidence["datacenter_ratio"] == 1.0
    assert len(result.evidence["datacenter_ips"]) == 3


@pytest.mark.asyncio
async def test_proxy_pattern_quiet_user():
    rule = IpHoppingRule(config={"patterns": ["proxy-pattern"]})
    context = proxy_context({"country": "DE"}, {"country": "DE"})

    assert (await rule.evaluate(context)).matched is False


@pytest.mark.asyncio
async def test_ip_hopping_all_requires_every_pattern():
    rule = IpHoppingRule(config={"patterns": ["rapid-ip-change", "geo-impossible"], "match_type": "all"})
    logins = [
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=180, user_id="u1", ip_address="10.0.0.1"),
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=120, user_id="u1", ip_address="10.0.0.2"),
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=60, user_id="u1", ip_address="10.0.0.3"),
    ]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        user_id="u1",
        ip_address="10.0.0.4",
        recent_events=logins,
    )
    assert (await rule.evaluate(context)).matched is False


# ---------------------------------------------------------------------------
# Credential stuffing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_credential_stuffing_many_users_one_ip():
    rule = CredentialStuffingRule()
    attempts = [event(seconds_ago=i, ip_address=ATTACKER_IP, email=f"person{i}@example.com") for i in range(1, 6)]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=attempts,
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.CRITICAL
    assert result.evidence["unique_users"] == 5
    assert result.evidence["rapid_sequential_attempts"] == 4
    assert result.score == 65


@pytest.mark.asyncio
async def test_credential_stuffing_below_user_minimum():
    rule = CredentialStuffingRule()
    attempts = [event(seconds_ago=i, ip_address=ATTACKER_IP, email=f"person{i}@example.com") for i in range(1, 5)]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=attempts,
    )
    assert (await rule.evaluate(context)).matched is False


# ---------------------------------------------------------------------------
# Account enumeration
# ---------------------------------------------------------------------------

def test_levenshtein_distance():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("same", "same") == 0


def test_sequential_count():
    assert sequential_count(["user1", "user2", "user3", "admin"]) == 2
    assert sequential_count(["user1", "guest2"]) == 0


@pytest.mark.asyncio
async def test_account_enumeration_sequential_usernames():
    rule = AccountEnumerationRule()
    attempts = [
        event(seconds_ago=60 - i, ip_address=ATTACKER_IP, username=f"user{i}")
        for i in range(1, 6)
    ]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=attempts,
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.severity == Severity.HIGH
    assert result.score == 85
    assert result.evidence["sequential_count"] == 4


@pytest.mark.asyncio
async def test_account_enumeration_similar_usernames():
    rule = AccountEnumerationRule()
    names = ["johnsmith", "johnsmitn", "johnsmith", "johnsmitx", "johnsmite"]
    attempts = [event(seconds_ago=60 - i, ip_address=ATTACKER_IP, username=name) for i, name in enumerate(names)]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=attempts,
    )

    result = await rule.evaluate(context)

    assert result.matched is True
    assert result.score == 80
    assert result.evidence["similarity_score"] >= 0.8


@pytest.mark.asyncio
async def test_account_enumeration_needs_min_attempts():
    rule = AccountEnumerationRule()
    attempts = [event(seconds_ago=i, ip_address=ATTACKER_IP, username=f"user{i}") for i in range(1, 4)]
    context = EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=NOW,
        ip_address=ATTACKER_IP,
        recent_events=attempts,
    )
    assert (await rule.evaluate(context)).matched is False


# ---------------------------------------------------------------------------
# Session hijacking
# ---------------------------------------------------------------------------

def session_events(*rows):
    return [
        event(SecurityEventType.LOGIN_SUCCESS, seconds_ago=seconds_ago, session_id="s1", **kwargs)
        for seconds_ago, kwargs in rows
    ]


@pytest.mark.asyncio
async def test_session_ip_churn():
    rule = SessionHijackingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        session_id="s1",
        recent_events=session_events(
            (300, {"ip_address": "10.0.0.1"}),
            (200, {"ip_address": "10.0.0.2"}),
            (100, {"ip_address": "10.0.0.3"}),
        ),
    )

    result = await rule.evaluate(context)

    assert result.severity == Severity.CRITICAL
    assert result.score == 95
    assert result.evidence["total_changes"] == 2
    assert result.evidence["ip_changes"] == ["10.0.0.1 -> 10.0.0.2", "10.0.0.2 -> 10.0.0.3"]


@pytest.mark.asyncio
async def test_session_user_agent_change():
    rule = SessionHijackingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        metadata={"session_id": "s1"},
        recent_events=session_events(
            (300, {"ip_address": "10.0.0.1", "user_agent": "Firefox"}),
            (100, {"ip_address": "10.0.0.1", "user_agent": "curl/8.0"}),
        ),
    )

    result = await rule.evaluate(context)

    assert result.severity == Severity.HIGH
    assert result.score == 90
    assert result.evidence["original_user_agent"] == "Firefox"
    assert result.evidence["new_user_agent"] == "curl/8.0"


@pytest.mark.asyncio
async def test_session_country_change():
    rule = SessionHijackingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        session_id="s1",
        recent_events=session_events(
            (300, {"ip_address": "10.0.0.1", "metadata": {"country": "DE"}}),
            (100, {"ip_address": "10.0.0.1", "metadata": {"country": "US"}}),
        ),
    )

    result = await rule.evaluate(context)

    assert result.severity == Severity.HIGH
    assert result.score == 85
    assert [loc["country"] for loc in result.evidence["locations"]] == ["DE", "US"]


@pytest.mark.asyncio
async def test_session_needs_two_events():
    rule = SessionHijackingRule()
    context = EventContext(
        event_type=SecurityEventType.LOGIN_SUCCESS,
        timestamp=NOW,
        session_id="s1",
        recent_events=session_events((100, {"ip_address": "10.0.0.1"})),
    )
    assert (await rule.evaluate(context)).matched is False
