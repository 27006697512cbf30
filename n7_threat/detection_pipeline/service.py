import hashlib
import logging
from datetime import timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import settings
from ..database.base import new_id
from ..messaging.nats_client import NATSClient, nats_client
from ..models.alert import SecurityAlert
from ..notifier.service import EscalationSink
from ..rule_engine.service import RuleEngineService
from ..rules.base import DetectionRule, RuleEvaluationResult
from ..rules.config import ActionsConfig
from ..schemas.alert import AlertStatus, AlertType, CorrelationResult
from ..schemas.event import EventContext
from ..service_manager.base_service import BaseService
from ..store.base import AlertStore
from ..threat_correlator.service import AlertCorrelationService

logger = logging.getLogger("n7-threat.detection-pipeline")


def alert_type_for(rule: DetectionRule) -> AlertType:
    tags = set(rule.tags)
    if "brute-force" in tags:
        return AlertType.BRUTE_FORCE_ATTEMPT
    if tags & {"geo-anomaly", "ip-hopping"}:
        return AlertType.SUSPICIOUS_LOGIN
    if "session-hijacking" in tags:
        return AlertType.ANOMALY_DETECTED
    return AlertType.THREAT_RULE_MATCH


def compute_fingerprint(
        alert_type: str,
        user: Optional[str],
        ip_address: Optional[str],
        rule_id: Optional[str],
        session_id: Optional[str],
        timestamp_ms: int,
        window_ms: int,
) -> str:
    """
    Same alert type, actor, source, rule and session inside one time slot of
    window_ms yield the same fingerprint.
    """
    time_slot = timestamp_ms // window_ms
    key = "|".join([
        alert_type,
        user or "anonymous",
        ip_address or "unknown",
        rule_id or "manual",
        session_id or "no-session",
        str(time_slot),
    ])
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def build_alert(
        rule: DetectionRule,
        context: EventContext,
        result: RuleEvaluationResult,
        dedup_window_ms: int = settings.ALERT_DEDUPLICATION_WINDOW,
        actions: Optional[ActionsConfig] = None,
) -> SecurityAlert:
    """Turn one rule match into an unsaved SecurityAlert row."""
    alert_type = alert_type_for(rule)
    severity = result.severity or rule.severity
    timestamp_ms = int(context.timestamp.replace(tzinfo=timezone.utc).timestamp() * 1000)

    suggested = [a.value for a in result.suggested_actions]
    if actions is not None:
        suggested = actions.permitted(suggested, severity)

    location = context.location if isinstance(context.location, str) else context.metadata.get("city")

    return SecurityAlert(
        id=new_id(),
        type=alert_type.value,
        severity=severity.value,
        status=AlertStatus.PENDING.value,
        title=rule.name,
        description=result.reason,
        fingerprint=compute_fingerprint(
            alert_type.value,
            context.user_id or context.email,
            context.ip_address,
            rule.id,
            context.session_id,
            timestamp_ms,
            dedup_window_ms,
        ),
        is_correlated=False,
        correlation_id=None,
        correlated_alerts=[],
        rule_id=rule.id,
        rule_name=rule.name,
        event_type=context.event_type.value,
        user_id=context.user_id,
        user_email=context.email,
        ip_address=context.ip_address,
        session_id=context.session_id,
        user_agent=context.user_agent,
        location=location,
        score=result.score or 0,
        occurrence_count=1,
        first_seen=context.timestamp,
        last_seen=context.timestamp,
        evidence=dict(result.evidence),
        context={
            "event_type": context.event_type.value,
            "event_timestamp": context.timestamp.isoformat(),
            "metadata": dict(context.metadata),
            "suggested_actions": suggested,
        },
        tags=list(rule.tags),
        created_at=context.timestamp,
        updated_at=context.timestamp,
    )


class ProcessedAlert(BaseModel):
    """What happened to one rule match."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    alert: SecurityAlert
    duplicate: bool = False
    correlation: Optional[CorrelationResult] = None
    escalated: bool = False


class DetectionPipelineService(BaseService):
    """
    Detection Pipeline Service.
    Responsibility: event -> rule engine -> alert (or dedup bump) ->
    correlation -> escalation sink.
    """

    def __init__(
            self,
            engine: RuleEngineService,
            store: AlertStore,
            correlator: AlertCorrelationService,
            sink: Optional[EscalationSink] = None,
            client: Optional[NATSClient] = None,
            dedup_window_ms: Optional[int] = None,
    ):
        super().__init__("DetectionPipelineService")
        self.engine = engine
        self.store = store
        self.correlator = correlator
        self.sink = sink
        self.client = client or nats_client
        self.dedup_window_ms = dedup_window_ms or settings.ALERT_DEDUPLICATION_WINDOW
        self._subscription = None

    async def start(self):
        if self.client.is_connected:
            self._subscription = await self.client.nc.subscribe(
                settings.EVENTS_SUBJECT,
                cb=self.handle_event_message,
                queue="detection_pipeline"
            )
            logger.info(f"Subscribed to {settings.EVENTS_SUBJECT}")
        else:
            logger.warning("NATS not connected, DetectionPipelineService only accepts direct calls")
        logger.info("DetectionPipelineService started.")

    async def stop(self):
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        logger.info("DetectionPipelineService stopped.")

    async def handle_event_message(self, msg):
        try:
            context = EventContext.model_validate_json(msg.data)
        except ValidationError as e:
            logger.error(f"Discarding malformed security event: {e}")
            return

        try:
            await self.process_event(context)
        except Exception as e:
            logger.error(f"Error processing security event: {e}", exc_info=True)

    async def process_event(self, context: EventContext) -> List[ProcessedAlert]:
        config = self.engine.config
        matches = await self.engine.evaluate(context)
        enabled = set(config.alerts.enabled_severities)

        processed = []
        for result in matches:
            if result.severity not in enabled:
                logger.debug(f"Ignoring {result.severity.value} match from {result.rule_id}")
                continue

            rule = self.engine.get_rule(result.rule_id)
            if rule is None:
                logger.warning(f"Rule {result.rule_id} disappeared before its alert was built")
                continue

            processed.append(await self._handle_match(rule, context, result, config.actions))

        return processed

    async def _handle_match(
            self,
            rule: DetectionRule,
            context: EventContext,
            result: RuleEvaluationResult,
            actions: ActionsConfig,
    ) -> ProcessedAlert:
        alert = build_alert(rule, context, result, self.dedup_window_ms, actions)

        existing = await self.store.find_by_fingerprint(alert.fingerprint)
        if existing is not None:
            touched = await self.store.touch_occurrence(existing.id, context.timestamp)
            logger.info(f"Duplicate alert {existing.id} ({alert.fingerprint}), occurrence recorded")
            return ProcessedAlert(alert=touched or existing, duplicate=True)

        alert = await self.store.add(alert)
        correlation = await self.correlator.correlate_alert(alert)

        escalated = False
        if correlation.should_escalate and self.sink is not None:
            escalated = await self.sink.escalate(alert, correlation)

        return ProcessedAlert(alert=alert, correlation=correlation, escalated=escalated)
