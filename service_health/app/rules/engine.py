"""
Status resolution engine for the Health Status Service.

Given a newest-first history and the position of one entry, the engine picks
the rule status matching that entry and walks conditional statuses down to a
leaf. Every gap in the rule document (unknown reference, missing interval,
undated entry) resolves to None; nothing raises past ``resolve``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from shared.errors import StatusCycleError
from shared.logging import get_logger
from ..history.dates import today_local, utc_now
from ..history.models import HistoryEntry, StatusBlob
from .intervals import Interval, Scope
from .models import RuleSet
from .statuses import (
    ConditionalStatus, ReferenceStatus, RuleStatus, StatusNode, health_status_is_valid
)

DEFAULT_MAX_DEPTH = 32

COND_REQUIRE_TEST = "require-test"
COND_REQUIRE_SYMPTOMS = "require-symptoms"
COND_TIMEOUT = "timeout"
COND_TEST_USER = "test-user"
COND_TEST_INTERVAL = "test-interval"


@dataclass(frozen=True)
class UserIdentity:
    """Attributes of the acting user that test-user conditions look at."""
    role: Optional[str] = None
    student_level: Optional[str] = None


@dataclass(frozen=True)
class EvaluationContext:
    """Everything one evaluation pass reads besides the history itself."""
    rules: Optional[RuleSet]
    identity: UserIdentity = field(default_factory=UserIdentity)
    tz: Optional[tzinfo] = None
    today: Optional[date] = None
    now: Optional[datetime] = None
    max_depth: int = DEFAULT_MAX_DEPTH

    def __post_init__(self):
        if self.today is None:
            object.__setattr__(self, "today", today_local(self.tz))
        if self.now is None:
            object.__setattr__(self, "now", utc_now())


def _match_string_target(source: Any, target: Optional[str]) -> bool:
    if target is None:
        return False
    if isinstance(source, str):
        return source.lower() == target.lower()
    if isinstance(source, list):
        return any(isinstance(s, str) and s.lower() == target.lower() for s in source)
    return False


class StatusEngine:
    """Status evaluation engine."""

    def __init__(self):
        self.logger = get_logger("health.engine")
        self._conditions: Dict[str, Callable[..., Optional[StatusNode]]] = {
            COND_REQUIRE_TEST: self._eval_require_test,
            COND_REQUIRE_SYMPTOMS: self._eval_require_symptoms,
            COND_TIMEOUT: self._eval_timeout,
            COND_TEST_USER: self._eval_test_user,
            COND_TEST_INTERVAL: self._eval_test_interval,
        }

    def rule_status(self, entry: HistoryEntry, rules: Optional[RuleSet]) -> Optional[StatusNode]:
        """Status node the rule catalog assigns to a history entry."""
        blob = entry.blob
        if blob is None or rules is None:
            return None

        if entry.is_test:
            if not entry.can_test_update_status or rules.tests is None:
                return None
            result = rules.tests.match_rule_result(blob)
            return result.status if result is not None else None

        if entry.is_symptoms:
            rule = rules.symptoms.match_rule(blob, rules) if rules.symptoms is not None else None
            return rule.status if rule is not None else None

        if entry.is_contact_trace:
            rule = rules.contact_trace.match_rule(blob, rules) if rules.contact_trace is not None else None
            return rule.status if rule is not None else None

        if entry.is_action:
            rule = rules.actions.match_rule(blob) if rules.actions is not None else None
            return rule.status if rule is not None else None

        return None

    def resolve(self, history: Sequence[HistoryEntry], index: int,
                ctx: EvaluationContext) -> Optional[RuleStatus]:
        """Leaf status applicable at ``history[index]``."""
        if index is None or not (0 <= index < len(history)):
            return None
        node = self.rule_status(history[index], ctx.rules)
        if node is None:
            return None
        return self.evaluate(node, history, index, ctx)

    def evaluate(self, node: Optional[StatusNode], history: Sequence[HistoryEntry],
                 index: Optional[int], ctx: EvaluationContext) -> Optional[RuleStatus]:
        """Evaluate any status node, turning internal failures into None."""
        try:
            return self.eval_status(node, history, index, ctx)
        except StatusCycleError as e:
            self.logger.warning("Status evaluation aborted", code=e.code, **e.details)
            return None
        except Exception as e:
            self.logger.error("Status evaluation error", error=str(e), exc_info=True)
            return None

    def eval_status(self, node: Optional[StatusNode], history: Sequence[HistoryEntry],
                    index: Optional[int], ctx: EvaluationContext,
                    depth: int = 0, trail: Tuple[str, ...] = ()) -> Optional[RuleStatus]:
        if node is None:
            return None

        if depth > ctx.max_depth:
            raise StatusCycleError(trail[-1] if trail else type(node).__name__, depth)

        if isinstance(node, RuleStatus):
            return node

        if isinstance(node, ReferenceStatus):
            if node.reference in trail:
                raise StatusCycleError(node.reference, depth)
            target = ctx.rules.status_named(node.reference) if ctx.rules is not None else None
            if target is None:
                self.logger.debug("Unknown status reference", reference=node.reference)
                return None
            return self.eval_status(target, history, index, ctx, depth + 1, trail + (node.reference,))

        if isinstance(node, ConditionalStatus):
            branch = self._evaluate_condition(node, history, index, ctx)
            return self.eval_status(branch, history, index, ctx, depth + 1, trail)

        return None

    def _evaluate_condition(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                            index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:
        handler = self._conditions.get(node.condition)
        if handler is None:
            self.logger.warning("Unknown status condition", condition=node.condition)
            return None
        return handler(node, history, index, ctx)

    def _anchor(self, history: Sequence[HistoryEntry], index: Optional[int],
                ctx: EvaluationContext) -> Optional[date]:
        if history is None or index is None or not (0 <= index < len(history)):
            return None
        return history[index].date_midnight_local(ctx.tz)

    def _scan(self, node: ConditionalStatus, history: Sequence[HistoryEntry], index: Optional[int],
              ctx: EvaluationContext,
              fulfills: Callable[[HistoryEntry, date, Interval], bool]) -> Optional[StatusNode]:
        """Shared scan of require-test and require-symptoms."""
        anchor = self._anchor(history, index, ctx)
        interval = node.interval
        if anchor is None or interval is None:
            return None

        scope = interval.scope(ctx.rules) or Scope.UNSCOPED
        if scope == Scope.FUTURE:
            # newest-first: newer entries sit below the current index
            indices = range(index - 1, -1, -1)
        elif scope == Scope.PAST:
            indices = range(index + 1, len(history))
        else:
            indices = (i for i in range(len(history)) if i != index)

        for i in indices:
            if fulfills(history[i], anchor, interval):
                return node.success

        # Do not fail while the required window is still open
        if interval.current(ctx.rules) is True and self._current_interval_fulfills(interval, anchor, ctx):
            return node.success

        return node.fail

    def _eval_require_test(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                           index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:
        category = node.params.get("category")
        if isinstance(category, list):
            category = set(category)

        def fulfills(entry: HistoryEntry, anchor: date, interval: Interval) -> bool:
            if not (entry.is_test and entry.can_test_update_status):
                return False
            entry_date = entry.date_midnight_local(ctx.tz)
            if entry_date is None or not interval.match((entry_date - anchor).days, ctx.rules):
                return False
            if category is None:
                return True
            tests = ctx.rules.tests if ctx.rules is not None else None
            result = tests.match_rule_result(entry.blob) if tests is not None else None
            if result is None or result.category is None:
                return False
            if isinstance(category, str):
                return category == result.category
            if isinstance(category, set):
                return result.category in category
            return False

        return self._scan(node, history, index, ctx, fulfills)

    def _eval_require_symptoms(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                               index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:

        def fulfills(entry: HistoryEntry, anchor: date, interval: Interval) -> bool:
            if not entry.is_symptoms:
                return False
            entry_date = entry.date_midnight_local(ctx.tz)
            return entry_date is not None and interval.match((entry_date - anchor).days, ctx.rules)

        return self._scan(node, history, index, ctx, fulfills)

    def _eval_timeout(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                      index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:
        anchor = self._anchor(history, index, ctx)
        if anchor is None or node.interval is None:
            return None
        # Still inside the window: report the waiting (fail) branch
        if self._current_interval_fulfills(node.interval, anchor, ctx):
            return node.fail
        return node.success

    def _eval_test_user(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                        index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:
        role = node.params.get("role")
        if role is not None and not _match_string_target(role, ctx.identity.role):
            return node.fail
        student_level = node.params.get("student_level")
        if student_level is not None and not _match_string_target(student_level, ctx.identity.student_level):
            return node.fail
        return node.success

    def _eval_test_interval(self, node: ConditionalStatus, history: Sequence[HistoryEntry],
                            index: Optional[int], ctx: EvaluationContext) -> Optional[StatusNode]:
        if node.interval is not None and node.interval.valid(ctx.rules):
            return node.success
        return node.fail

    @staticmethod
    def _current_interval_fulfills(interval: Interval, anchor: date, ctx: EvaluationContext) -> bool:
        return interval.match((ctx.today - anchor).days, ctx.rules)

    def build_status(self, history: Sequence[HistoryEntry], ctx: EvaluationContext,
                     current: Optional[StatusBlob] = None) -> Optional[StatusBlob]:
        """
        Replay a newest-first history from oldest to newest.

        Starts from ``current`` (or the rule set defaults) and lets every past
        entry whose resolved status passes the override policy replace it.
        """
        rules = ctx.rules
        if rules is None:
            return current

        status_blob = current
        if status_blob is None and rules.defaults is not None:
            default_status = self.evaluate(rules.defaults.status, history, None, ctx)
            if default_status is not None:
                status_blob = self.apply_status(default_status, None, None, rules)

        for index in range(len(history) - 1, -1, -1):
            entry = history[index]
            if entry.date_utc is None or entry.date_utc > ctx.now:
                continue
            status = self.resolve(history, index, ctx)
            if status is not None and status.can_update_status(status_blob):
                status_blob = self.apply_status(status, entry, status_blob, rules)
                self.logger.debug(
                    "Status updated",
                    entry_id=entry.id,
                    health_status=status_blob.health_status,
                    priority=status_blob.priority
                )

        return status_blob

    @staticmethod
    def apply_status(status: RuleStatus, entry: Optional[HistoryEntry],
                     previous: Optional[StatusBlob], rules: Optional[RuleSet]) -> StatusBlob:
        """Announced status after ``status`` took effect at ``entry``."""
        if health_status_is_valid(status.health_status):
            health_status = status.health_status
        else:
            health_status = previous.health_status if previous is not None else None

        if status.priority is not None:
            # a negative priority only means "always wins" once; it is stored as its magnitude
            priority = abs(status.priority)
        else:
            priority = previous.priority if previous is not None else None

        has_next_step = status.next_step is not None or status.next_step_html is not None
        if has_next_step:
            next_step = status.next_step
            next_step_html = status.next_step_html
            next_step_date = status.next_step_date_utc(entry.date_utc if entry is not None else None, rules)
        elif previous is not None:
            next_step = previous.next_step
            next_step_html = previous.next_step_html
            next_step_date = previous.next_step_date_utc
        else:
            next_step = next_step_html = next_step_date = None

        return StatusBlob(
            health_status=health_status,
            priority=priority,
            next_step=next_step,
            next_step_html=next_step_html,
            next_step_date_utc=next_step_date,
            event_explanation=status.event_explanation,
            event_explanation_html=status.event_explanation_html,
            reason=status.reason,
            warning=status.warning,
            history_blob=entry.blob if entry is not None else None,
        )
