from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils import to_naive_utc, utcnow


class SecurityEventType(str, Enum):
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PASSWORD_RESET = "PASSWORD_RESET"
    SESSION_ACTIVITY = "SESSION_ACTIVITY"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    API_CALL = "API_CALL"
    PAGE_VIEW = "PAGE_VIEW"


class HistoricalEvent(BaseModel):
    """
    A past security event for the same actor, used for pattern learning.
    Geo data (country, location {lat, lon}, asn, is_datacenter) lives in metadata.
    """
    model_config = ConfigDict(from_attributes=True)

    event_type: SecurityEventType
    timestamp: datetime
    user_id: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    success: Optional[bool] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class EventContext(BaseModel):
    """
    Input to every detection rule.
    recent_events carries no ordering guarantee; rules sort what they need.
    """
    model_config = ConfigDict(from_attributes=True)

    event_type: SecurityEventType
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    recent_events: List[HistoricalEvent] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @property
    def country(self) -> Optional[str]:
        return self.metadata.get("country")

    @property
    def location(self) -> Any:
        return self.metadata.get("location")
