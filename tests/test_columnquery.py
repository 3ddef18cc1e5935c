from datetime import datetime, timezone

import pytest

from stackscope.columnquery import (
    ColumnQueryAPI,
    MergeSelection,
    MetricsSample,
    NotFoundError,
    ProfileRow,
    ProfileType,
    ReportType,
    SingleSelection,
    diff_samples,
    render_report,
)
from stackscope.models import (
    Flamegraph,
    Function,
    Location,
    LocationLine,
    Sample,
    StacktraceSamples,
    Top,
)
from stackscope.pprof import decode_pprof
from stackscope.selector import InvalidArgumentError

QUERY = 'memory:alloc_objects:count:space:bytes{job="default"}'
FAR_FUTURE = 9223372036854775807


def _id(n):
    return bytes(15) + bytes([n])


def _loc(n, name):
    return Location(
        id=_id(n),
        address=n,
        lines=[LocationLine(function=Function(id=_id(100 + n), name=name), line=n)],
    )


def _row(ts, stack, value, sample_type="alloc_objects", sample_unit="count",
         duration=0, labels=None):
    return ProfileRow(
        name="memory",
        sample_type=sample_type,
        sample_unit=sample_unit,
        period_type="space",
        period_unit="bytes",
        labels={"job": "default"} if labels is None else labels,
        timestamp=ts,
        duration=duration,
        stacktrace=stack,
        value=value,
    )


@pytest.fixture
def diff_api():
    loc1 = _loc(1, "testFunc")
    loc2 = _loc(2, "testFunc")
    api = ColumnQueryAPI()
    api.insert(_row(1, [loc1], 1))
    api.insert(_row(2, [loc2], 2))
    return api


def test_query_range_single_series():
    api = ColumnQueryAPI()
    stack = [_loc(1, "a")]
    for ts in range(10, 0, -1):
        api.insert(_row(ts, stack, ts))
    series = api.query_range(QUERY, 0, FAR_FUTURE)
    assert len(series) == 1
    assert series[0].labels == {"job": "default"}
    assert len(series[0].samples) == 10
    assert [s.timestamp for s in series[0].samples] == list(range(1, 11))


def test_query_range_sums_and_excludes_bounds():
    api = ColumnQueryAPI()
    api.insert(_row(5, [_loc(1, "a")], 3))
    api.insert(_row(5, [_loc(2, "b")], 4))
    api.insert(_row(10, [_loc(1, "a")], 7))
    series = api.query_range(QUERY, 0, 10)
    assert series[0].samples == [MetricsSample(timestamp=5, value=7)]


def test_query_range_separates_series_by_labels():
    api = ColumnQueryAPI()
    api.insert(_row(1, [_loc(1, "a")], 1, labels={"job": "default", "pod": "x"}))
    api.insert(_row(1, [_loc(1, "a")], 1, labels={"job": "default", "pod": "y"}))
    series = api.query_range(QUERY, 0, FAR_FUTURE)
    assert [s.labels["pod"] for s in series] == ["x", "y"]


def test_query_range_accepts_datetimes():
    api = ColumnQueryAPI()
    api.insert(_row(1500, [_loc(1, "a")], 1))
    series = api.query_range(
        QUERY,
        datetime(1970, 1, 1, tzinfo=timezone.utc),
        datetime(1970, 1, 1, 0, 0, 2, tzinfo=timezone.utc),
    )
    assert series[0].samples[0].value == 1


def test_query_range_invalid_query():
    with pytest.raises(InvalidArgumentError):
        ColumnQueryAPI().query_range("memory:alloc_objects", 0, 1)


def test_query_single_flamegraph_height_and_unit():
    api = ColumnQueryAPI()
    stack = [_loc(3, "c"), _loc(2, "b"), _loc(1, "a")]
    api.insert(_row(42, stack, 5))
    fg = api.query(SingleSelection(QUERY, 42))
    assert isinstance(fg, Flamegraph)
    assert fg.height == 4
    assert fg.total == 5
    assert fg.unit == "count"


def test_query_single_pprof_parses():
    api = ColumnQueryAPI()
    api.insert(_row(42, [_loc(2, "b"), _loc(1, "a")], 5))
    data = api.query(SingleSelection(QUERY, 42), ReportType.PPROF)
    profile = decode_pprof(data)
    assert [s.value for s in profile.samples] == [[5]]
    assert profile.time_nanos == 42_000_000


def test_query_single_not_found():
    api = ColumnQueryAPI()
    api.insert(_row(42, [_loc(1, "a")], 5))
    with pytest.raises(NotFoundError):
        api.select(SingleSelection(QUERY, 43))


def test_merge_sums_same_stacktrace():
    api = ColumnQueryAPI()
    stack = [_loc(1, "a")]
    api.insert(_row(1, stack, 2))
    api.insert(_row(2, stack, 3))
    api.insert(_row(3, [_loc(2, "b")], 4))
    merged = api.select(MergeSelection(QUERY, 0, 3))
    assert [s.value for s in merged.samples] == [5]


def test_query_unknown_mode():
    with pytest.raises(InvalidArgumentError):
        ColumnQueryAPI().query("not a selection")


def test_query_diff_flamegraph(diff_api):
    fg = diff_api.query_diff(SingleSelection(QUERY, 1), SingleSelection(QUERY, 2))
    assert fg.height == 2
    assert len(fg.root.children) == 1
    assert fg.root.children[0].cumulative == 2
    assert fg.root.children[0].diff == 1


def test_query_diff_top(diff_api):
    top = diff_api.query_diff(
        SingleSelection(QUERY, 1), SingleSelection(QUERY, 2), ReportType.TOP
    )
    assert isinstance(top, Top)
    assert len(top.nodes) == 1
    assert top.nodes[0].cumulative == 2
    assert top.nodes[0].diff == 1


def test_query_diff_pprof(diff_api):
    data = diff_api.query_diff(
        SingleSelection(QUERY, 1), SingleSelection(QUERY, 2), ReportType.PPROF
    )
    profile = decode_pprof(data)
    assert len(profile.samples) == 2
    assert profile.samples[0].value == [2]
    assert profile.samples[1].value == [-1]


def test_query_diff_requires_both(diff_api):
    with pytest.raises(InvalidArgumentError):
        diff_api.query_diff(None, SingleSelection(QUERY, 2))


def test_profile_types():
    api = ColumnQueryAPI()
    stack = [_loc(1, "a")]
    for sample_type, unit in [
        ("inuse_space", "bytes"),
        ("alloc_objects", "count"),
        ("inuse_objects", "count"),
        ("alloc_space", "bytes"),
        ("alloc_space", "bytes"),
    ]:
        api.insert(_row(1, stack, 1, sample_type=sample_type, sample_unit=unit, duration=10))
    assert api.profile_types() == [
        ProfileType("memory", "alloc_objects", "count", "space", "bytes", True),
        ProfileType("memory", "alloc_space", "bytes", "space", "bytes", True),
        ProfileType("memory", "inuse_objects", "count", "space", "bytes", True),
        ProfileType("memory", "inuse_space", "bytes", "space", "bytes", True),
    ]
    assert api.profile_types()[0].key == "memory:alloc_objects:count:space:bytes:delta"


def test_label_names():
    api = ColumnQueryAPI()
    api.insert(_row(1, [_loc(1, "a")], 1))
    assert api.labels() == ["job"]


def test_label_values():
    api = ColumnQueryAPI()
    api.insert(_row(1, [_loc(1, "a")], 1))
    api.insert(_row(2, [_loc(1, "a")], 1, labels={"job": "batch"}))
    api.insert(_row(3, [_loc(1, "a")], 1, labels={"job": "default"}))
    assert api.values("job") == ["batch", "default"]


def test_diff_samples_signs():
    loc = _loc(1, "a")
    base = StacktraceSamples(samples=[Sample(location=[loc], value=3)])
    compare = StacktraceSamples(samples=[Sample(location=[loc], value=5)])
    diff = diff_samples(base, compare)
    assert [(s.value, s.diff_value) for s in diff.samples] == [(5, 5), (0, -3)]


def test_render_report_unknown_type():
    with pytest.raises(InvalidArgumentError):
        render_report(StacktraceSamples(), "bogus")