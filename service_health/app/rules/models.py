"""
Rule data models for the Health Status Service.

A rule document is downloaded JSON with the top-level keys ``tests``,
``symptoms``, ``contact_trace``, ``actions``, ``defaults``, ``statuses`` and
``constants``. Each catalog keeps its rules in document order and the first
matching rule wins.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from shared.logging import get_logger
from ..history.models import HistoryBlob, Symptom
from .intervals import Interval, ReferenceInterval, parse_interval
from .statuses import StatusNode, parse_status, statuses_from_json

logger = get_logger("health.rules")

USER_TEST_MONITOR_INTERVAL = "UserTestMonitorInterval"


def _dict_entries(json: Any, kind: str) -> List[Dict[str, Any]]:
    """Mapping entries of a JSON list; anything else is logged and dropped."""
    if not isinstance(json, list):
        return []
    entries = []
    for entry in json:
        if isinstance(entry, dict):
            entries.append(entry)
        else:
            logger.warning("Skipping malformed rule entry", kind=kind, entry=repr(entry)[:100])
    return entries


def _lower(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) else None


@dataclass(frozen=True)
class SymptomsGroup:
    """Named group of symptoms used by symptom count rules."""
    id: Optional[str] = None
    name: Optional[str] = None
    group: Optional[str] = None
    visible: Optional[bool] = None
    symptoms: List[Symptom] = field(default_factory=list)

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "SymptomsGroup":
        return cls(
            id=json.get("id"),
            name=json.get("name"),
            group=json.get("group"),
            visible=json.get("visible"),
            symptoms=Symptom.list_from_json(json.get("symptoms")) or [],
        )

    @staticmethod
    def get_counts(groups: List["SymptomsGroup"], selected: Optional[Set[str]]) -> Dict[str, int]:
        """Number of selected symptom ids per group name."""
        counts: Dict[str, int] = {}
        if selected is not None:
            for group in groups:
                counts[group.name] = sum(1 for s in group.symptoms if s.id in selected)
        return counts

    @staticmethod
    def get_symptoms(groups: List["SymptomsGroup"], selected: Optional[Set[str]]) -> List[Symptom]:
        if selected is None:
            return []
        return [s for group in groups for s in group.symptoms if s.id in selected]


@dataclass(frozen=True)
class TestRuleResult:
    """One ``(result, category, status)`` entry of a test rule."""
    __test__ = False

    test_result: Optional[str] = None
    category: Optional[str] = None
    status: Optional[StatusNode] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "TestRuleResult":
        return cls(
            test_result=json.get("result"),
            category=json.get("category"),
            status=parse_status(json.get("status")),
        )

    def match_blob(self, blob: Optional[HistoryBlob]) -> bool:
        return self.test_result is not None and _lower(self.test_result) == _lower(blob.test_result if blob else None)


@dataclass(frozen=True)
class TestRule:
    __test__ = False

    test_type: Optional[str] = None
    category: Optional[str] = None
    results: List[TestRuleResult] = field(default_factory=list)

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "TestRule":
        return cls(
            test_type=json.get("test_type"),
            category=json.get("category"),
            results=[TestRuleResult.from_json(e) for e in _dict_entries(json.get("results"), "test result")],
        )


@dataclass(frozen=True)
class TestRuleSet:
    __test__ = False

    rules: List[TestRule] = field(default_factory=list)

    @classmethod
    def from_json(cls, json: Any) -> Optional["TestRuleSet"]:
        if not isinstance(json, dict):
            return None
        return cls(rules=[TestRule.from_json(e) for e in _dict_entries(json.get("rules"), "test")])

    def match_rule_result(self, blob: Optional[HistoryBlob]) -> Optional[TestRuleResult]:
        if blob is None:
            return None
        test_type = _lower(blob.test_type)
        for rule in self.rules:
            if rule.test_type is not None and _lower(rule.test_type) == test_type:
                for result in rule.results:
                    if result.match_blob(blob):
                        return result
        return None


@dataclass(frozen=True)
class SymptomsRule:
    counts: Dict[str, Interval] = field(default_factory=dict)
    status: Optional[StatusNode] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "SymptomsRule":
        counts: Dict[str, Interval] = {}
        raw_counts = json.get("counts")
        if isinstance(raw_counts, dict):
            for group_name, raw in raw_counts.items():
                interval = parse_interval(raw)
                if interval is not None:
                    counts[group_name] = interval
        return cls(counts=counts, status=parse_status(json.get("status")))

    def match_counts(self, counts: Dict[str, int], rules: Optional["RuleSet"] = None) -> bool:
        for group_name, interval in self.counts.items():
            if not interval.match(counts.get(group_name), rules):
                return False
        return True


@dataclass(frozen=True)
class SymptomsRuleSet:
    rules: List[SymptomsRule] = field(default_factory=list)
    groups: Optional[List[SymptomsGroup]] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["SymptomsRuleSet"]:
        if not isinstance(json, dict):
            return None
        return cls(
            rules=[SymptomsRule.from_json(e) for e in _dict_entries(json.get("rules"), "symptoms")],
            groups=[SymptomsGroup.from_json(e) for e in _dict_entries(json.get("groups"), "symptoms group")]
            if isinstance(json.get("groups"), list) else None,
        )

    def match_rule(self, blob: Optional[HistoryBlob], rules: Optional["RuleSet"] = None) -> Optional[SymptomsRule]:
        symptoms_ids = blob.symptoms_ids if blob is not None else None
        if self.groups is None or symptoms_ids is None:
            return None
        counts = SymptomsGroup.get_counts(self.groups, symptoms_ids)
        for rule in self.rules:
            if rule.match_counts(counts, rules):
                return rule
        return None


@dataclass(frozen=True)
class ContactTraceRule:
    duration: Optional[Interval] = None
    status: Optional[StatusNode] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "ContactTraceRule":
        return cls(duration=parse_interval(json.get("duration")), status=parse_status(json.get("status")))

    def match_blob(self, blob: Optional[HistoryBlob], rules: Optional["RuleSet"] = None) -> bool:
        minutes = blob.trace_duration_in_minutes if blob is not None else None
        return self.duration is not None and self.duration.match(minutes, rules)


@dataclass(frozen=True)
class ContactTraceRuleSet:
    rules: List[ContactTraceRule] = field(default_factory=list)

    @classmethod
    def from_json(cls, json: Any) -> Optional["ContactTraceRuleSet"]:
        if not isinstance(json, dict):
            return None
        return cls(rules=[ContactTraceRule.from_json(e) for e in _dict_entries(json.get("rules"), "contact trace")])

    def match_rule(self, blob: Optional[HistoryBlob], rules: Optional["RuleSet"] = None) -> Optional[ContactTraceRule]:
        if blob is None:
            return None
        for rule in self.rules:
            if rule.match_blob(blob, rules):
                return rule
        return None


@dataclass(frozen=True)
class ActionRule:
    type: Optional[str] = None
    status: Optional[StatusNode] = None

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "ActionRule":
        return cls(type=json.get("type"), status=parse_status(json.get("status")))

    def match_blob(self, blob: Optional[HistoryBlob]) -> bool:
        return self.type is not None and _lower(self.type) == _lower(blob.action_type if blob else None)


@dataclass(frozen=True)
class ActionRuleSet:
    rules: List[ActionRule] = field(default_factory=list)

    @classmethod
    def from_json(cls, json: Any) -> Optional["ActionRuleSet"]:
        if not isinstance(json, dict):
            return None
        return cls(rules=[ActionRule.from_json(e) for e in _dict_entries(json.get("rules"), "action")])

    def match_rule(self, blob: Optional[HistoryBlob], rules: Optional["RuleSet"] = None) -> Optional[ActionRule]:
        for rule in self.rules:
            if rule.match_blob(blob):
                return rule
        return None


@dataclass(frozen=True)
class DefaultsSet:
    status: Optional[StatusNode] = None

    @classmethod
    def from_json(cls, json: Any) -> Optional["DefaultsSet"]:
        if not isinstance(json, dict):
            return None
        return cls(status=parse_status(json.get("status")))


def _resolve_constants(constants: Dict[str, Any]) -> Dict[str, Optional[Interval]]:
    """Follow reference chains once; chains that loop or dangle resolve to None."""
    resolved: Dict[str, Optional[Interval]] = {}
    for name in constants:
        seen: Set[str] = set()
        current = name
        interval: Optional[Interval] = None
        while current in constants and current not in seen:
            seen.add(current)
            interval = parse_interval(constants[current])
            if isinstance(interval, ReferenceInterval):
                current = interval.reference
                interval = None
            else:
                break
        resolved[name] = interval
    return resolved


@dataclass(frozen=True)
class RuleSet:
    """Parsed rule document; read-only for the lifetime of an evaluation pass."""
    tests: Optional[TestRuleSet] = None
    symptoms: Optional[SymptomsRuleSet] = None
    contact_trace: Optional[ContactTraceRuleSet] = None
    actions: Optional[ActionRuleSet] = None
    defaults: Optional[DefaultsSet] = None
    statuses: Dict[str, StatusNode] = field(default_factory=dict)
    constants: Dict[str, Any] = field(default_factory=dict)
    _constant_intervals: Dict[str, Optional[Interval]] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_constant_intervals", _resolve_constants(self.constants))

    @classmethod
    def from_json(cls, json: Any) -> Optional["RuleSet"]:
        if not isinstance(json, dict):
            return None
        constants = json.get("constants")
        return cls(
            tests=TestRuleSet.from_json(json.get("tests")),
            symptoms=SymptomsRuleSet.from_json(json.get("symptoms")),
            contact_trace=ContactTraceRuleSet.from_json(json.get("contact_trace")),
            actions=ActionRuleSet.from_json(json.get("actions")),
            defaults=DefaultsSet.from_json(json.get("defaults")),
            statuses=statuses_from_json(json.get("statuses")),
            constants=dict(constants) if isinstance(constants, dict) else {},
        )

    def constant_interval(self, name: str) -> Optional[Interval]:
        """Interval a named constant stands for, computed once per rule set."""
        return self._constant_intervals.get(name)

    def status_named(self, name: str) -> Optional[StatusNode]:
        return self.statuses.get(name)

    @property
    def user_test_monitor_interval(self) -> Optional[int]:
        value = self.constants.get(USER_TEST_MONITOR_INTERVAL)
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "test_rules": len(self.tests.rules) if self.tests else 0,
            "symptoms_rules": len(self.symptoms.rules) if self.symptoms else 0,
            "symptoms_groups": len(self.symptoms.groups or []) if self.symptoms else 0,
            "contact_trace_rules": len(self.contact_trace.rules) if self.contact_trace else 0,
            "action_rules": len(self.actions.rules) if self.actions else 0,
            "statuses": len(self.statuses),
            "constants": len(self.constants),
        }
