"""Read API over an in-memory table of profile sample rows."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Union

from .flamegraph import generate_flamegraph_flat
from .models import (
    Flamegraph,
    Location,
    ProfileMeta,
    Sample,
    StacktraceSamples,
    Top,
    ValueType,
)
from .pprof import encode_pprof, generate_flat_pprof
from .selector import Condition, InvalidArgumentError, query_to_filter_exprs
from .top import generate_top_table

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Timestamp = Union[int, datetime]


class NotFoundError(LookupError):
    """No profile matched the requested time and selectors."""


class ReportType(Enum):
    FLAMEGRAPH = "flamegraph"
    PPROF = "pprof"
    TOP = "top"


def _millis(value: Timestamp) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - _EPOCH) // timedelta(milliseconds=1)
    return int(value)


@dataclass
class ProfileRow:
    """One stored sample: a stack trace, its value and the series it belongs to.

    The timestamp is in milliseconds; a non-zero duration marks a delta profile.
    """

    name: str = ""
    sample_type: str = ""
    sample_unit: str = ""
    period_type: str = ""
    period_unit: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: int = 0
    duration: int = 0
    period: int = 0
    stacktrace: list[Location] = field(default_factory=list)
    value: int = 0
    pprof_labels: dict[str, str] = field(default_factory=dict)
    pprof_num_labels: dict[str, int] = field(default_factory=dict)

    def _columns(self) -> dict[str, Any]:
        columns: dict[str, Any] = {
            "name": self.name,
            "sample_type": self.sample_type,
            "sample_unit": self.sample_unit,
            "period_type": self.period_type,
            "period_unit": self.period_unit,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "value": self.value,
        }
        for key, text in self.labels.items():
            columns["labels." + key] = text
        return columns


@dataclass(frozen=True)
class ProfileType:
    """A kind of profile that is present in storage."""

    name: str
    sample_type: str
    sample_unit: str
    period_type: str
    period_unit: str
    delta: bool = False

    @property
    def key(self) -> str:
        key = ":".join(
            (self.name, self.sample_type, self.sample_unit, self.period_type, self.period_unit)
        )
        return key + ":delta" if self.delta else key


@dataclass
class MetricsSample:
    """The summed value of a series at one timestamp (milliseconds)."""

    timestamp: int
    value: int


@dataclass
class MetricsSeries:
    """A label set with its samples in timestamp order."""

    labels: dict[str, str] = field(default_factory=dict)
    samples: list[MetricsSample] = field(default_factory=list)


@dataclass(frozen=True)
class SingleSelection:
    """The profile of a series at exactly one point in time."""

    query: str
    time: Timestamp


@dataclass(frozen=True)
class MergeSelection:
    """All profiles of a series strictly between start and end, merged."""

    query: str
    start: Timestamp
    end: Timestamp


Selection = Union[SingleSelection, MergeSelection]
Report = Union[Flamegraph, bytes, Top]


def render_report(
    samples: StacktraceSamples, report_type: ReportType = ReportType.FLAMEGRAPH
) -> Report:
    """Render samples as a flame graph, gzipped pprof bytes or a top table."""
    if report_type is ReportType.FLAMEGRAPH:
        return generate_flamegraph_flat(samples)
    if report_type is ReportType.PPROF:
        return encode_pprof(generate_flat_pprof(samples))
    if report_type is ReportType.TOP:
        return generate_top_table(samples)
    raise InvalidArgumentError("requested report type does not exist")


def diff_samples(base: StacktraceSamples, compare: StacktraceSamples) -> StacktraceSamples:
    """Combine two profiles: compare counts positively, base only as negative diff."""
    diff = StacktraceSamples()
    for sample in compare.samples:
        diff.samples.append(
            Sample(
                location=sample.location,
                value=sample.value,
                diff_value=sample.value,
                label=sample.label,
                num_label=sample.num_label,
                num_unit=sample.num_unit,
            )
        )
    for sample in base.samples:
        diff.samples.append(
            Sample(
                location=sample.location,
                diff_value=-sample.value,
                label=sample.label,
                num_label=sample.num_label,
                num_unit=sample.num_unit,
            )
        )
    return diff


def _to_stacktrace_samples(rows: list[ProfileRow], with_labels: bool) -> StacktraceSamples:
    first = rows[0]
    result = StacktraceSamples(
        meta=ProfileMeta(
            timestamp=first.timestamp,
            duration=first.duration,
            period=first.period,
            period_type=ValueType(first.period_type, first.period_unit),
            sample_type=ValueType(first.sample_type, first.sample_unit),
        )
    )
    grouped: dict[tuple, Sample] = {}
    for row in rows:
        key: tuple = tuple(loc.id for loc in row.stacktrace)
        if with_labels:
            key = (
                key,
                tuple(sorted(row.pprof_labels.items())),
                tuple(sorted(row.pprof_num_labels.items())),
            )
        sample = grouped.get(key)
        if sample is None:
            sample = Sample(location=list(row.stacktrace))
            if with_labels:
                sample.label = {k: [v] for k, v in row.pprof_labels.items()}
                sample.num_label = {k: [v] for k, v in row.pprof_num_labels.items()}
            grouped[key] = sample
            result.samples.append(sample)
        sample.value += row.value
    return result


class ColumnQueryAPI:
    """Queries over stored profile rows: labels, series, types and reports."""

    def __init__(self, rows: Iterable[ProfileRow] = ()) -> None:
        self._rows: list[ProfileRow] = list(rows)
        self._lock = threading.Lock()

    def insert(self, row: ProfileRow) -> None:
        with self._lock:
            self._rows.append(row)

    def _scan(self, conditions: list[Condition]) -> list[ProfileRow]:
        with self._lock:
            rows = list(self._rows)
        matched = []
        for row in rows:
            columns = row._columns()
            if all(condition.matches(columns) for condition in conditions):
                matched.append(row)
        return matched

    def labels(self) -> list[str]:
        """All label names in storage, sorted."""
        with self._lock:
            names = {name for row in self._rows for name in row.labels}
        return sorted(names)

    def values(self, label_name: str) -> list[str]:
        """All distinct values of a label, sorted."""
        with self._lock:
            found = {row.labels[label_name] for row in self._rows if label_name in row.labels}
        return sorted(found)

    def query_range(self, query: str, start: Timestamp, end: Timestamp) -> list[MetricsSeries]:
        """Total value per series and timestamp, strictly between start and end."""
        conditions = query_to_filter_exprs(query) + [
            Condition("timestamp", ">", _millis(start)),
            Condition("timestamp", "<", _millis(end)),
        ]
        totals: dict[tuple, int] = {}
        for row in self._scan(conditions):
            key = (tuple(sorted(row.labels.items())), row.timestamp)
            totals[key] = totals.get(key, 0) + row.value

        series_by_labels: dict[tuple, MetricsSeries] = {}
        for (label_items, ts), total in totals.items():
            label_set = tuple(sorted((k, v) for k, v in label_items if v))
            series = series_by_labels.get(label_set)
            if series is None:
                series = MetricsSeries(labels=dict(label_set))
                series_by_labels[label_set] = series
            series.samples.append(MetricsSample(timestamp=ts, value=total))

        result = list(series_by_labels.values())
        for series in result:
            series.samples.sort(key=lambda s: s.timestamp)
        return result

    def profile_types(self) -> list[ProfileType]:
        """The distinct profile types in storage, sorted."""
        with self._lock:
            found = {
                ProfileType(
                    name=row.name,
                    sample_type=row.sample_type,
                    sample_unit=row.sample_unit,
                    period_type=row.period_type,
                    period_unit=row.period_unit,
                    delta=row.duration > 0,
                )
                for row in self._rows
            }
        return sorted(
            found,
            key=lambda t: (t.name, t.sample_type, t.sample_unit, t.period_type, t.period_unit, t.delta),
        )

    def select(self, selection: Selection) -> StacktraceSamples:
        """Resolve a single or merge selection into stack trace samples."""
        if isinstance(selection, SingleSelection):
            conditions = query_to_filter_exprs(selection.query) + [
                Condition("timestamp", "==", _millis(selection.time))
            ]
            rows = self._scan(conditions)
            if not rows:
                raise NotFoundError("could not find profile at requested time and selectors")
            return _to_stacktrace_samples(rows, with_labels=True)
        if isinstance(selection, MergeSelection):
            conditions = query_to_filter_exprs(selection.query) + [
                Condition("timestamp", ">", _millis(selection.start)),
                Condition("timestamp", "<", _millis(selection.end)),
            ]
            rows = self._scan(conditions)
            if not rows:
                return StacktraceSamples()
            return _to_stacktrace_samples(rows, with_labels=False)
        raise InvalidArgumentError("unknown mode for profile selection")

    def query(
        self, selection: Selection, report_type: ReportType = ReportType.FLAMEGRAPH
    ) -> Report:
        """Render a report of one selected or merged profile."""
        if not isinstance(selection, (SingleSelection, MergeSelection)):
            raise InvalidArgumentError("unknown query mode")
        return render_report(self.select(selection), report_type)

    def query_diff(
        self,
        a: Selection | None,
        b: Selection | None,
        report_type: ReportType = ReportType.FLAMEGRAPH,
    ) -> Report:
        """Render a report of profile b compared against profile a."""
        if a is None or b is None:
            raise InvalidArgumentError(
                "requested diff mode, but did not provide parameters for diff"
            )
        base = self.select(a)
        compare = self.select(b)
        return render_report(diff_samples(base, compare), report_type)