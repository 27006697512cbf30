from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from n7_threat.detection_pipeline.service import DetectionPipelineService, compute_fingerprint
from n7_threat.rule_engine.service import RuleEngineService
from n7_threat.rules.config import DEFAULT_THREAT_RULES_CONFIG
from n7_threat.schemas.alert import AlertType
from n7_threat.schemas.event import EventContext, HistoricalEvent, SecurityEventType
from n7_threat.threat_correlator.service import AlertCorrelationService, CorrelationConfig

NOW = datetime(2026, 3, 2, 12, 0, 0)
ATTACKER_IP = "203.0.113.5"


def brute_force_event(at, attempts):
    failures = [
        HistoricalEvent(
            event_type=SecurityEventType.LOGIN_FAILED,
            timestamp=at - timedelta(seconds=5 * (i + 1)),
            ip_address=ATTACKER_IP,
        )
        for i in range(attempts)
    ]
    return EventContext(
        event_type=SecurityEventType.LOGIN_FAILED,
        timestamp=at,
        ip_address=ATTACKER_IP,
        recent_events=failures,
    )


@pytest.fixture
def sink():
    sink = AsyncMock()
    sink.escalate.return_value = True
    return sink


@pytest.fixture
def pipeline(store, sink):
    engine = RuleEngineService(config=DEFAULT_THREAT_RULES_CONFIG, config_loader=lambda: DEFAULT_THREAT_RULES_CONFIG)
    config = CorrelationConfig()
    correlator = AlertCorrelationService(store, config_provider=lambda: config)
    client = MagicMock()
    client.is_connected = False
    return DetectionPipelineService(engine, store, correlator, sink=sink, client=client, dedup_window_ms=300_000)


def test_fingerprint_is_stable_within_a_slot():
    first = compute_fingerprint("BRUTE_FORCE_ATTEMPT", None, ATTACKER_IP, "bf", None, 1_000, 300_000)
    same_slot = compute_fingerprint("BRUTE_FORCE_ATTEMPT", None, ATTACKER_IP, "bf", None, 299_999, 300_000)
    next_slot = compute_fingerprint("BRUTE_FORCE_ATTEMPT", None, ATTACKER_IP, "bf", None, 300_000, 300_000)

    assert len(first) == 16
    assert first == same_slot
    assert first != next_slot


@pytest.mark.asyncio
async def test_critical_match_becomes_alert(pipeline, store, sink):
    processed = await pipeline.process_event(brute_force_event(NOW, 20))

    assert len(processed) == 1
    item = processed[0]
    assert item.duplicate is False
    assert item.escalated is False
    assert item.alert.type == AlertType.BRUTE_FORCE_ATTEMPT.value
    assert item.alert.severity == "CRITICAL"
    assert item.alert.rule_id == "brute_force-default"
    # BLOCK_IP needs auto_block, which is off by default
    assert item.alert.context["suggested_actions"] == ["INCREASE_MONITORING"]
    assert item.correlation.related_alerts == []

    stored = await store.get(item.alert.id)
    assert stored.occurrence_count == 1
    sink.escalate.assert_not_awaited()


@pytest.mark.asyncio
async def test_repeat_in_same_slot_is_deduplicated(pipeline, store):
    first = await pipeline.process_event(brute_force_event(NOW, 20))
    again = await pipeline.process_event(brute_force_event(NOW, 20))

    assert again[0].duplicate is True
    assert again[0].alert.id == first[0].alert.id
    assert again[0].alert.occurrence_count == 2
    assert again[0].correlation is None


@pytest.mark.asyncio
async def test_low_severity_matches_are_ignored(pipeline, sink):
    # Five failures only reach MEDIUM
    assert await pipeline.process_event(brute_force_event(NOW, 5)) == []
    sink.escalate.assert_not_awaited()


@pytest.mark.asyncio
async def test_second_critical_alert_escalates(pipeline, sink):
    first = await pipeline.process_event(brute_force_event(NOW, 20))
    second = await pipeline.process_event(brute_force_event(NOW + timedelta(minutes=6), 20))

    item = second[0]
    assert item.duplicate is False
    assert item.alert.id != first[0].alert.id
    assert item.correlation.should_escalate is True
    assert item.correlation.escalation_reason.startswith("2 critical alerts in correlation group")
    assert item.escalated is True

    alert, result = sink.escalate.await_args.args
    assert alert.id == item.alert.id
    assert result.correlation_id == item.alert.correlation_id


@pytest.mark.asyncio
async def test_malformed_message_is_discarded(pipeline):
    pipeline.process_event = AsyncMock()
    msg = MagicMock()
    msg.data = b"not json"

    await pipeline.handle_event_message(msg)

    pipeline.process_event.assert_not_awaited()


@pytest.mark.asyncio
async def test_message_is_decoded_and_processed(pipeline):
    pipeline.process_event = AsyncMock()
    msg = MagicMock()
    msg.data = brute_force_event(NOW, 3).model_dump_json().encode()

    await pipeline.handle_event_message(msg)

    context = pipeline.process_event.await_args.args[0]
    assert context.ip_address == ATTACKER_IP
    assert len(context.recent_events) == 3
