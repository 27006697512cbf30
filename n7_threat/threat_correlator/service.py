import logging
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ..config import Settings, get_settings
from ..database.base import new_id
from ..exceptions import CorrelationGroupNotFoundError, InvalidMergeRequestError
from ..models.alert import SecurityAlert
from ..schemas.alert import CorrelationGroupAnalysis, CorrelationResult, MergeResult
from ..service_manager.base_service import BaseService
from ..store.base import AlertStore
from . import patterns as group_patterns

logger = logging.getLogger("n7-threat.threat-correlator")

CANDIDATE_LIMIT = 50


class CorrelationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    time_window_ms: int = 3_600_000
    # Not used to gate grouping
    min_alerts: int = 3
    auto_escalate: bool = True
    critical_count: int = 2
    high_count: int = 3
    total_count: int = 5


def correlation_config_from_settings(settings: Optional[Settings] = None) -> CorrelationConfig:
    settings = settings or get_settings()
    return CorrelationConfig(
        time_window_ms=settings.ALERT_CORRELATION_WINDOW,
        min_alerts=settings.ALERT_CORRELATION_MIN_ALERTS,
        auto_escalate=settings.ALERT_CORRELATION_AUTO_ESCALATE,
        critical_count=settings.ALERT_ESCALATION_CRITICAL_COUNT,
        high_count=settings.ALERT_ESCALATION_HIGH_COUNT,
        total_count=settings.ALERT_ESCALATION_TOTAL_COUNT,
    )


def _has_link_attributes(alert: SecurityAlert) -> bool:
    return any((alert.user_id, alert.ip_address, alert.session_id, alert.user_email, alert.rule_id))


def _pick_correlation_id(candidates: Sequence[SecurityAlert]) -> Optional[str]:
    """Reuse the id of the earliest-created candidate that already belongs to a group."""
    grouped = [c for c in candidates if c.correlation_id]
    if not grouped:
        return None
    return min(grouped, key=lambda c: (c.created_at, c.id)).correlation_id


class AlertCorrelationService(BaseService):
    """
    Alert Correlation Service.
    Responsibility: Link a new alert to recent alerts that share its user,
    IP, session, email or rule; score the link; classify the group into
    attack patterns and decide on escalation. It is the only writer of
    correlation_id / is_correlated / correlated_alerts.

    Configuration is read through config_provider on every call.
    Storage errors are logged and re-raised unchanged.
    """

    def __init__(
            self,
            store: AlertStore,
            config_provider: Callable[[], CorrelationConfig] = correlation_config_from_settings,
            id_factory: Callable[[], str] = new_id,
    ):
        super().__init__("AlertCorrelationService")
        self.store = store
        self._config_provider = config_provider
        self._id_factory = id_factory

    async def start(self):
        logger.info("AlertCorrelationService started.")

    async def stop(self):
        logger.info("AlertCorrelationService stopped.")

    async def correlate_alert(self, alert: SecurityAlert) -> CorrelationResult:
        started = time.perf_counter()
        config = self._config_provider()

        if not _has_link_attributes(alert):
            logger.debug(f"Alert {alert.id} has no linkable attributes, skipping correlation")
            return CorrelationResult(correlation_id=self._id_factory())

        since = alert.created_at - timedelta(milliseconds=config.time_window_ms)
        try:
            candidates = await self.store.find_related(alert, since=since, limit=CANDIDATE_LIMIT)
        except Exception as e:
            logger.error(f"Error loading correlation candidates for alert {alert.id}: {e}")
            raise

        if not candidates:
            # No siblings means no group; nothing is written
            return CorrelationResult(correlation_id=self._id_factory())

        correlation_id = _pick_correlation_id(candidates) or self._id_factory()
        group = [alert] + list(candidates)

        score = group_patterns.correlation_score(alert, candidates)
        detected = group_patterns.detect_patterns(group)

        reasons: List[str] = []
        if config.auto_escalate:
            reasons = group_patterns.escalation_reasons(
                group,
                detected,
                critical_count=config.critical_count,
                high_count=config.high_count,
                total_count=config.total_count,
            )

        # Candidates from other groups pull their whole group into this one
        absorbed = sorted({
            c.correlation_id for c in candidates
            if c.correlation_id and c.correlation_id != correlation_id
        })

        edges = self._edges(group)
        try:
            if absorbed:
                moved = await self.store.reassign_correlation(absorbed, correlation_id)
                logger.info(f"Folded correlation groups {absorbed} into {correlation_id} ({moved} alerts)")
            await self.store.mark_correlated(correlation_id, edges)
        except Exception as e:
            logger.error(f"Error persisting correlation {correlation_id} for alert {alert.id}: {e}")
            raise

        for member in group:
            member.correlation_id = correlation_id
            member.is_correlated = True
            member.correlated_alerts = edges[member.id]

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Correlated alert {alert.id} into {correlation_id}: {len(candidates)} related, "
            f"score={score}, patterns={detected} ({elapsed_ms:.1f} ms)"
        )
        if reasons:
            logger.warning(f"Correlation group {correlation_id} requires escalation: {'; '.join(reasons)}")

        return CorrelationResult(
            correlation_id=correlation_id,
            related_alerts=list(candidates),
            correlation_score=score,
            should_escalate=bool(reasons),
            escalation_reason="; ".join(reasons) if reasons else None,
            patterns=detected,
        )

    @staticmethod
    def _edges(group: Sequence[SecurityAlert]) -> Dict[str, List[str]]:
        """
        correlated_alerts for every member: existing edges plus the new
        siblings, deduplicated and sorted so a re-run writes the same lists.
        """
        ids = [member.id for member in group]
        edges = {}
        for member in group:
            linked = set(member.correlated_alerts or [])
            linked.update(other for other in ids if other != member.id)
            linked.discard(member.id)
            edges[member.id] = sorted(linked)
        return edges

    async def get_correlation_group(self, correlation_id: str) -> List[SecurityAlert]:
        return await self.store.find_by_correlation_id(correlation_id)

    async def analyze_correlation_group(self, correlation_id: str) -> CorrelationGroupAnalysis:
        alerts = await self.get_correlation_group(correlation_id)
        if not alerts:
            raise CorrelationGroupNotFoundError(correlation_id)

        summary = group_patterns.summarize(alerts)
        detected = group_patterns.detect_patterns(alerts)
        risk = group_patterns.risk_score(alerts, detected)

        return CorrelationGroupAnalysis(
            correlation_id=correlation_id,
            summary=summary,
            patterns=detected,
            risk_score=risk,
            recommendations=group_patterns.recommendations(summary, detected, risk),
        )

    async def merge_correlation_groups(self, correlation_ids: Sequence[str]) -> MergeResult:
        distinct = list(dict.fromkeys(cid for cid in correlation_ids if cid))
        if len(distinct) < 2:
            raise InvalidMergeRequestError("At least 2 correlation IDs required for merging")

        new_correlation_id = self._id_factory()
        try:
            affected = await self.store.reassign_correlation(distinct, new_correlation_id)
        except Exception as e:
            logger.error(f"Error merging correlation groups {distinct}: {e}")
            raise

        logger.info(f"Merged {len(distinct)} correlation groups into {new_correlation_id} ({affected} alerts)")
        return MergeResult(new_correlation_id=new_correlation_id, affected_alerts=affected)
