"""
Integer interval algebra used by rule documents.

An interval in a rule document is one of:

- a literal integer (``3``),
- a reference into the rule set's ``constants`` table (``"QuarantineDays"``),
- a range object ``{"min": ..., "max": ..., "scope": ..., "current": ...}``
  whose bounds are themselves intervals.

Every operation takes the owning rule set so references can be resolved.
Resolution gaps never raise: matches report False and values report None.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, FrozenSet, Optional, Protocol, Union


class Scope(IntEnum):
    """Which part of the history a require-* condition scans."""
    PAST = -1
    UNSCOPED = 0
    FUTURE = 1


class ConstantsResolver(Protocol):
    """Anything able to resolve a named constant to an interval (the rule set)."""

    def constant_interval(self, name: str) -> Optional["Interval"]:
        ...


@dataclass(frozen=True)
class LiteralInterval:
    """A single integer."""
    literal: int

    def match(self, value: Optional[int], rules: Optional[ConstantsResolver] = None) -> bool:
        return self.literal == value

    def value(self, rules: Optional[ConstantsResolver] = None) -> Optional[int]:
        return self.literal

    def valid(self, rules: Optional[ConstantsResolver] = None, seen: FrozenSet[str] = frozenset()) -> bool:
        return True

    def scope(self, rules: Optional[ConstantsResolver] = None) -> Optional[Scope]:
        return None

    def current(self, rules: Optional[ConstantsResolver] = None) -> Optional[bool]:
        return None


@dataclass(frozen=True)
class RangeInterval:
    """Closed range with optional bounds, a scan scope and an is-current flag."""
    min: Optional["Interval"] = None
    max: Optional["Interval"] = None
    scope_value: Optional[Scope] = None
    current_value: Optional[bool] = None

    def match(self, value: Optional[int], rules: Optional[ConstantsResolver] = None) -> bool:
        if value is None:
            return False
        if self.min is not None:
            min_value = self.min.value(rules)
            if min_value is None or min_value > value:
                return False
        if self.max is not None:
            max_value = self.max.value(rules)
            if max_value is None or max_value < value:
                return False
        return True

    def value(self, rules: Optional[ConstantsResolver] = None) -> Optional[int]:
        return None

    def valid(self, rules: Optional[ConstantsResolver] = None, seen: FrozenSet[str] = frozenset()) -> bool:
        return ((self.min is None) or self.min.valid(rules, seen)) and \
               ((self.max is None) or self.max.valid(rules, seen))

    def scope(self, rules: Optional[ConstantsResolver] = None) -> Optional[Scope]:
        return self.scope_value

    def current(self, rules: Optional[ConstantsResolver] = None) -> Optional[bool]:
        return self.current_value


@dataclass(frozen=True)
class ReferenceInterval:
    """Named reference into the rule set constants table."""
    reference: str

    def resolved(self, rules: Optional[ConstantsResolver]) -> Optional["Interval"]:
        if rules is None:
            return None
        return rules.constant_interval(self.reference)

    def match(self, value: Optional[int], rules: Optional[ConstantsResolver] = None) -> bool:
        target = self.resolved(rules)
        return target.match(value, rules) if target is not None else False

    def value(self, rules: Optional[ConstantsResolver] = None) -> Optional[int]:
        target = self.resolved(rules)
        return target.value(rules) if target is not None else None

    def valid(self, rules: Optional[ConstantsResolver] = None, seen: FrozenSet[str] = frozenset()) -> bool:
        # A range bound pointing back at its own constant would recurse forever
        if self.reference in seen:
            return False
        target = self.resolved(rules)
        return target.valid(rules, seen | {self.reference}) if target is not None else False

    def scope(self, rules: Optional[ConstantsResolver] = None) -> Optional[Scope]:
        target = self.resolved(rules)
        return target.scope(rules) if target is not None else None

    def current(self, rules: Optional[ConstantsResolver] = None) -> Optional[bool]:
        target = self.resolved(rules)
        return target.current(rules) if target is not None else None


Interval = Union[LiteralInterval, RangeInterval, ReferenceInterval]


def scope_from_json(value: Any) -> Optional[Scope]:
    """Decode the ``scope`` field of a range."""
    if isinstance(value, str):
        if value == "future":
            return Scope.FUTURE
        if value == "past":
            return Scope.PAST
    elif isinstance(value, int) and not isinstance(value, bool):
        if value > 0:
            return Scope.FUTURE
        if value < 0:
            return Scope.PAST
    return None


def parse_interval(raw: Any) -> Optional[Interval]:
    """Parse raw rule-document JSON into an interval, or None if it is not one."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return LiteralInterval(raw)
    if isinstance(raw, str):
        return ReferenceInterval(raw)
    if isinstance(raw, dict):
        current = raw.get("current")
        return RangeInterval(
            min=parse_interval(raw.get("min")),
            max=parse_interval(raw.get("max")),
            scope_value=scope_from_json(raw.get("scope")),
            current_value=current if isinstance(current, bool) else None,
        )
    return None
