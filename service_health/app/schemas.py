"""
Request and response models for the Health Status HTTP surface.

History entries are exchanged already decrypted: the wire record fields plus
the payload under ``blob``.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .history.dates import health_datetime_to_string
from .history.models import HistoryBlob, HistoryEntry, StatusBlob
from .rules.engine import UserIdentity
from .rules.models import RuleSet
from .rules.statuses import RuleStatus


class IdentityModel(BaseModel):
    """Acting user as seen by test-user conditions."""
    role: Optional[str] = Field(None, description="User role")
    student_level: Optional[str] = Field(None, description="Student level")

    def to_identity(self) -> UserIdentity:
        return UserIdentity(role=self.role, student_level=self.student_level)


class HistoryEntryModel(BaseModel):
    """Decrypted history entry."""
    id: Optional[str] = Field(None, description="Entry ID")
    user_id: Optional[str] = Field(None, description="Owner user ID")
    date: Optional[str] = Field(None, description="Entry date, wire format")
    type: Optional[str] = Field(None, description="History type wire name")
    location_id: Optional[str] = None
    county_id: Optional[str] = None
    blob: Optional[Dict[str, Any]] = Field(None, description="Decrypted payload")

    def to_entry(self) -> HistoryEntry:
        entry = HistoryEntry.from_json(self.model_dump(exclude={"blob"}))
        if entry.type is None:
            return entry
        return entry.with_blob(HistoryBlob.from_json(self.blob))


class StatusEvaluateRequest(BaseModel):
    """Request model for replaying a history into a status."""
    history: List[HistoryEntryModel] = Field(default_factory=list, description="Decrypted history")
    identity: IdentityModel = Field(default_factory=IdentityModel, description="Acting user")
    current_status: Optional[Dict[str, Any]] = Field(None, description="Status to start from")
    today: Optional[date] = Field(None, description="Local date override")
    now: Optional[datetime] = Field(None, description="Current time override")


class StatusEvaluateResponse(BaseModel):
    """Response model for status evaluation."""
    status: Optional[Dict[str, Any]] = Field(None, description="Resulting status blob")
    history_count: int = Field(..., description="Entries considered")
    evaluation_time_ms: float = Field(..., description="Evaluation time")


class StatusResolveRequest(BaseModel):
    """Request model for resolving the status of one history entry."""
    history: List[HistoryEntryModel] = Field(default_factory=list, description="Newest-first decrypted history")
    index: int = Field(..., description="Position of the entry to resolve")
    identity: IdentityModel = Field(default_factory=IdentityModel, description="Acting user")
    today: Optional[date] = Field(None, description="Local date override")


class RuleStatusModel(BaseModel):
    """Resolved leaf status."""
    health_status: Optional[str] = None
    priority: Optional[int] = None
    next_step: Optional[str] = None
    next_step_html: Optional[str] = None
    next_step_date: Optional[str] = None
    event_explanation: Optional[str] = None
    event_explanation_html: Optional[str] = None
    reason: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_status(cls, status: RuleStatus, entry: Optional[HistoryEntry] = None,
                    rules: Optional[RuleSet] = None) -> "RuleStatusModel":
        start = entry.date_utc if entry is not None else None
        return cls(
            health_status=status.health_status,
            priority=status.priority,
            next_step=status.next_step,
            next_step_html=status.next_step_html,
            next_step_date=health_datetime_to_string(status.next_step_date_utc(start, rules)),
            event_explanation=status.event_explanation,
            event_explanation_html=status.event_explanation_html,
            reason=status.reason,
            warning=status.warning,
        )


class StatusResolveResponse(BaseModel):
    """Response model for status resolution."""
    status: Optional[RuleStatusModel] = Field(None, description="Leaf status, absent when nothing applies")


class CanUpdateRequest(BaseModel):
    """Request model for the override check."""
    status: Dict[str, Any] = Field(..., description="Candidate leaf status")
    current_status: Optional[Dict[str, Any]] = Field(None, description="Currently announced status")

    def to_status(self) -> RuleStatus:
        return RuleStatus.from_json(self.status)

    def to_current(self) -> Optional[StatusBlob]:
        return StatusBlob.from_json(self.current_status)


class CanUpdateResponse(BaseModel):
    can_update: bool


class RuleStatsResponse(BaseModel):
    """Response model for rule document statistics."""
    loaded: bool
    stats: Dict[str, Any] = Field(default_factory=dict)
