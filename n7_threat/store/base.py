from datetime import datetime
from typing import Dict, List, Optional, Protocol

from ..models.alert import SecurityAlert


class AlertStore(Protocol):
    """
    Storage operations the detection pipeline and correlation service need.
    Implementations propagate their own errors; callers never swallow them.
    """

    async def find_related(self, alert: SecurityAlert, since: datetime, limit: int = 50) -> List[SecurityAlert]:
        """
        Alerts created at or after `since` that share user id, IP, session id,
        user email or rule id with `alert`. Excludes `alert` itself and
        RESOLVED/SUPPRESSED alerts. Most recent first, at most `limit` rows.
        """
        ...

    async def find_by_correlation_id(self, correlation_id: str) -> List[SecurityAlert]:
        """All alerts of a correlation group, newest first."""
        ...

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[SecurityAlert]:
        ...

    async def add(self, alert: SecurityAlert) -> SecurityAlert:
        ...

    async def touch_occurrence(self, alert_id: str, seen_at: datetime) -> Optional[SecurityAlert]:
        """Increment occurrence_count and move last_seen forward."""
        ...

    async def mark_correlated(self, correlation_id: str, edges: Dict[str, List[str]]) -> None:
        """
        Sets correlation_id and is_correlated on every alert id in `edges` and
        replaces its correlated_alerts with the given list, in one transaction.
        """
        ...

    async def reassign_correlation(self, correlation_ids: List[str], new_correlation_id: str) -> int:
        """Moves every alert of the given groups to `new_correlation_id`. Returns the row count."""
        ...
