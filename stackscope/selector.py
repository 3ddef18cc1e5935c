"""Label selector parsing and translation into column filter conditions."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class InvalidArgumentError(ValueError):
    """A request argument was malformed."""


class MatchType(Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"


@dataclass(frozen=True)
class Matcher:
    """A label matcher such as job="default"."""

    name: str
    type: MatchType
    value: str

    def _accepts(self, text: str) -> bool:
        if self.type is MatchType.EQUAL:
            return text == self.value
        if self.type is MatchType.NOT_EQUAL:
            return text != self.value
        found = re.fullmatch(self.value, text) is not None
        return found if self.type is MatchType.REGEX else not found


@dataclass(frozen=True)
class Condition:
    """A filter on one column; op is one of ==, !=, =~, !~, >, <."""

    column: str
    op: str
    value: Any
    _pattern: re.Pattern | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.op in ("=~", "!~"):
            object.__setattr__(self, "_pattern", re.compile(self.value))

    def matches(self, row: Mapping[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op in (">", "<"):
            if actual is None:
                return False
            return actual > self.value if self.op == ">" else actual < self.value
        if actual is None and isinstance(self.value, str) or (actual is None and self._pattern):
            actual = ""
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        found = self._pattern.fullmatch(str(actual)) is not None
        return found if self.op == "=~" else not found


_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'", "`": "`",
            "a": "\a", "b": "\b", "f": "\f", "v": "\v"}


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def fail(self, reason: str) -> InvalidArgumentError:
        return InvalidArgumentError(f"parse error at position {self.pos}: {reason}")

    def skip(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def string(self) -> str:
        quote = self.peek()
        if quote not in ('"', "'", "`"):
            raise self.fail("expected string")
        self.pos += 1
        out = []
        while True:
            if self.pos >= len(self.text):
                raise self.fail("unterminated string")
            char = self.text[self.pos]
            self.pos += 1
            if char == quote:
                return "".join(out)
            if char == "\\" and quote != "`":
                if self.pos >= len(self.text):
                    raise self.fail("unterminated string")
                escaped = self.text[self.pos]
                self.pos += 1
                if escaped not in _ESCAPES:
                    raise self.fail(f"unknown escape \\{escaped}")
                out.append(_ESCAPES[escaped])
            elif char == "\n" and quote != "`":
                raise self.fail("newline in string")
            else:
                out.append(char)

    def matchers(self) -> list[Matcher]:
        self.pos += 1
        found = []
        while True:
            self.skip()
            if self.peek() == "}":
                self.pos += 1
                return found
            name = _LABEL_NAME.match(self.text, self.pos)
            if name is None:
                raise self.fail("expected label name")
            self.pos = name.end()
            self.skip()
            for op in ("=~", "!~", "!=", "="):
                if self.text.startswith(op, self.pos):
                    self.pos += len(op)
                    break
            else:
                raise self.fail("expected label matching operator")
            self.skip()
            matcher = Matcher(name.group(), MatchType(op), self.string())
            if matcher.type in (MatchType.REGEX, MatchType.NOT_REGEX):
                try:
                    re.compile(matcher.value)
                except re.error as exc:
                    raise self.fail(f"invalid regular expression: {exc}") from exc
            found.append(matcher)
            self.skip()
            if self.peek() == ",":
                self.pos += 1
            elif self.peek() != "}":
                raise self.fail("expected , or }")

    def parse(self) -> list[Matcher]:
        self.skip()
        metric = _METRIC_NAME.match(self.text, self.pos)
        if metric is not None:
            self.pos = metric.end()
        self.skip()
        found: list[Matcher] = []
        if self.peek() == "{":
            found = self.matchers()
        self.skip()
        if self.pos != len(self.text):
            raise self.fail("unexpected trailing input")
        if metric is not None:
            if any(m.name == "__name__" for m in found):
                raise self.fail("metric name must not be set twice")
            found.insert(0, Matcher("__name__", MatchType.EQUAL, metric.group()))
        if not found or all(m._accepts("") for m in found):
            raise self.fail("vector selector must contain at least one non-empty matcher")
        return found


def parse_metric_selector(query: str) -> list[Matcher]:
    """Parse a selector like name{label="value"} into matchers."""
    return _Parser(query).parse()


_OPS = {
    MatchType.EQUAL: "==",
    MatchType.NOT_EQUAL: "!=",
    MatchType.REGEX: "=~",
    MatchType.NOT_REGEX: "!~",
}


def matcher_to_condition(matcher: Matcher) -> Condition:
    """Turn a label matcher into a condition on its labels.<name> column."""
    return Condition("labels." + matcher.name, _OPS[matcher.type], matcher.value)


def query_to_filter_exprs(query: str) -> list[Condition]:
    """Translate a profile query into the conditions that select its rows."""
    try:
        matchers = parse_metric_selector(query)
    except InvalidArgumentError as exc:
        raise InvalidArgumentError("failed to parse query") from exc

    name_matcher = None
    selection = []
    for matcher in matchers:
        if matcher.name == "__name__":
            name_matcher = matcher
        else:
            selection.append(matcher)
    if name_matcher is None:
        raise InvalidArgumentError("query must contain a profile-type selection")

    parts = name_matcher.value.split(":")
    if len(parts) not in (5, 6):
        raise InvalidArgumentError(
            "profile-type selection must be of the form "
            "<name>:<sample-type>:<sample-unit>:<period-type>:<period-unit>(:delta), "
            f"got({len(parts)}): {name_matcher.value!r}"
        )
    name, sample_type, sample_unit, period_type, period_unit = parts[:5]
    delta = len(parts) == 6 and parts[5] == "delta"

    conditions = [
        Condition("name", "==", name),
        Condition("sample_type", "==", sample_type),
        Condition("sample_unit", "==", sample_unit),
        Condition("period_type", "==", period_type),
        Condition("period_unit", "==", period_unit),
    ]
    conditions.extend(matcher_to_condition(m) for m in selection)
    conditions.append(Condition("duration", "!=" if delta else "==", 0))
    return conditions