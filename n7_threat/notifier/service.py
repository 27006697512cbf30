import json
import logging
from typing import Dict, Optional, Protocol

from ..config import settings
from ..messaging.nats_client import NATSClient, nats_client
from ..models.alert import SecurityAlert
from ..schemas.alert import CorrelationResult
from ..service_manager.base_service import BaseService
from ..utils import utcnow

logger = logging.getLogger("n7-threat.notifier")


class EscalationSink(Protocol):
    async def escalate(self, alert: SecurityAlert, result: CorrelationResult) -> bool:
        ...


def escalation_payload(alert: SecurityAlert, result: CorrelationResult) -> Dict:
    return {
        "correlation_id": result.correlation_id,
        "alert_id": alert.id,
        "alert_type": alert.type,
        "severity": alert.severity,
        "correlation_score": result.correlation_score,
        "escalation_reason": result.escalation_reason,
        "patterns": list(result.patterns),
        "alert_ids": [alert.id] + [related.id for related in result.related_alerts],
        "user_id": alert.user_id,
        "ip_address": alert.ip_address,
        "timestamp": utcnow().isoformat(),
    }


class NatsEscalationPublisher(BaseService):
    """
    Escalation Publisher Service.
    Responsibility: Hand escalating correlation results to downstream
    responders by publishing them as JSON on the escalation subject.
    """

    def __init__(self, client: Optional[NATSClient] = None, subject: Optional[str] = None):
        super().__init__("NatsEscalationPublisher")
        self.client = client or nats_client
        self.subject = subject or settings.ESCALATION_SUBJECT
        self.published = 0

    async def start(self):
        if not self.client.is_connected:
            logger.warning("NATS not connected, escalations will be dropped until it is")
        logger.info("NatsEscalationPublisher started.")

    async def stop(self):
        logger.info("NatsEscalationPublisher stopped.")

    async def escalate(self, alert: SecurityAlert, result: CorrelationResult) -> bool:
        if not self.client.is_connected:
            logger.warning(f"NATS not connected, dropping escalation for {result.correlation_id}")
            return False

        payload = escalation_payload(alert, result)
        await self.client.publish(self.subject, json.dumps(payload).encode())
        self.published += 1
        logger.warning(
            f"Escalated correlation group {result.correlation_id} to {self.subject}: {result.escalation_reason}"
        )
        return True
