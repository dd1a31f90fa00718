"""
Status nodes of a rule document.

A status in the document is one of three shapes, told apart once at load time:

- a plain object: a leaf ``RuleStatus`` carrying the health status code,
  priority and message templates,
- an object with a ``condition`` key: a ``ConditionalStatus`` choosing its
  ``success`` or ``fail`` sub-status,
- a string: a ``ReferenceStatus`` naming an entry of the ``statuses`` table.

Evaluation of conditionals lives in the engine module.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from shared.logging import get_logger
from ..history.models import StatusBlob
from .intervals import ConstantsResolver, Interval, parse_interval

logger = get_logger("health.statuses")

HEALTH_STATUS_RED = "red"
HEALTH_STATUS_ORANGE = "orange"
HEALTH_STATUS_YELLOW = "yellow"
HEALTH_STATUS_GREEN = "green"
HEALTH_STATUS_UNCHANGED = "no change"

_HEALTH_STATUS_WEIGHTS = {
    HEALTH_STATUS_RED: 4,
    HEALTH_STATUS_ORANGE: 3,
    HEALTH_STATUS_YELLOW: 2,
    HEALTH_STATUS_GREEN: 1,
}


def health_status_weight(status: Optional[str]) -> int:
    """Severity ranking; unknown codes and "no change" weigh 0."""
    return _HEALTH_STATUS_WEIGHTS.get(status, 0)


def health_status_is_valid(status: Optional[str]) -> bool:
    return status is not None and status != HEALTH_STATUS_UNCHANGED


@dataclass(frozen=True)
class RuleStatus:
    """Leaf status: evaluates to itself."""
    health_status: Optional[str] = None
    priority: Optional[int] = None

    next_step: Optional[str] = None
    next_step_html: Optional[str] = None
    next_step_interval: Optional[Interval] = None

    event_explanation: Optional[str] = None
    event_explanation_html: Optional[str] = None

    reason: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "RuleStatus":
        priority = json.get("priority")
        return cls(
            health_status=json.get("health_status"),
            priority=priority if isinstance(priority, int) and not isinstance(priority, bool) else None,
            next_step=json.get("next_step"),
            next_step_html=json.get("next_step_html"),
            next_step_interval=parse_interval(json.get("next_step_interval")),
            event_explanation=json.get("event_explanation"),
            event_explanation_html=json.get("event_explanation_html"),
            reason=json.get("reason"),
            warning=json.get("warning"),
        )

    def can_update_status(self, blob: Optional[StatusBlob]) -> bool:
        """Whether this status may replace the currently announced one."""
        current_weight = health_status_weight(blob.health_status if blob is not None else None)
        new_weight = health_status_weight(self.health_status) if self.health_status is not None else current_weight
        if new_weight < current_weight:
            # Less severe statuses are never blocked
            return True
        current_priority = (blob.priority if blob is not None else None) or 0
        new_priority = self.priority or 0
        return new_priority < 0 or current_priority <= new_priority

    def next_step_date_utc(self, start_date_utc: Optional[datetime],
                           rules: Optional[ConstantsResolver] = None) -> Optional[datetime]:
        days = self.next_step_interval.value(rules) if self.next_step_interval is not None else None
        if start_date_utc is None or days is None:
            return None
        return start_date_utc + timedelta(days=days)


@dataclass(frozen=True)
class ReferenceStatus:
    """Forward reference into the rule set ``statuses`` table."""
    reference: str


@dataclass(frozen=True)
class ConditionalStatus:
    """Named condition choosing between two sub-statuses."""
    condition: Optional[str]
    params: Dict[str, Any] = field(default_factory=dict)
    success: Optional["StatusNode"] = None
    fail: Optional["StatusNode"] = None
    # params["interval"] parsed once when the document is loaded
    interval: Optional[Interval] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "ConditionalStatus":
        params = json.get("params")
        if not isinstance(params, dict):
            params = {}
        return cls(
            condition=json.get("condition"),
            params=params,
            success=parse_status(json.get("success")),
            fail=parse_status(json.get("fail")),
            interval=parse_interval(params.get("interval")),
        )


StatusNode = Union[RuleStatus, ReferenceStatus, ConditionalStatus]


def parse_status(json: Any) -> Optional[StatusNode]:
    """Build a status node from rule-document JSON; malformed input gives None."""
    try:
        if isinstance(json, dict):
            if json.get("condition") is not None:
                return ConditionalStatus.from_json(json)
            return RuleStatus.from_json(json)
        if isinstance(json, str):
            return ReferenceStatus(json)
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning("Skipping malformed status", error=str(e))
    return None


def statuses_from_json(json: Any) -> Dict[str, StatusNode]:
    """Named statuses table; entries that fail to parse are left out."""
    statuses: Dict[str, StatusNode] = {}
    if isinstance(json, dict):
        for name, value in json.items():
            status = parse_status(value)
            if status is not None:
                statuses[name] = status
    return statuses
