import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from n7_threat.notifier.service import NatsEscalationPublisher
from n7_threat.schemas.alert import CorrelationResult


def mock_client(connected=True):
    client = MagicMock()
    client.is_connected = connected
    client.publish = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_escalation_is_published_as_json(make_alert):
    client = mock_client()
    publisher = NatsEscalationPublisher(client, subject="test.escalations")
    related = make_alert(user_id="u1")
    alert = make_alert(user_id="u1", severity="CRITICAL")
    result = CorrelationResult(
        correlation_id="group-1",
        related_alerts=[related],
        correlation_score=30,
        should_escalate=True,
        escalation_reason="2 critical alerts in correlation group",
        patterns=["rapid_fire_attack"],
    )

    assert await publisher.escalate(alert, result) is True

    subject, data = client.publish.await_args.args
    payload = json.loads(data)
    assert subject == "test.escalations"
    assert payload["correlation_id"] == "group-1"
    assert payload["alert_ids"] == [alert.id, related.id]
    assert payload["severity"] == "CRITICAL"
    assert payload["escalation_reason"] == "2 critical alerts in correlation group"
    assert publisher.published == 1


@pytest.mark.asyncio
async def test_escalation_dropped_when_disconnected(make_alert):
    client = mock_client(connected=False)
    publisher = NatsEscalationPublisher(client)

    escalated = await publisher.escalate(make_alert(), CorrelationResult(correlation_id="group-1"))

    assert escalated is False
    client.publish.assert_not_awaited()
    assert publisher.published == 0
