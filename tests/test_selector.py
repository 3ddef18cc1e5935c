import pytest

from stackscope.selector import (
    Condition,
    InvalidArgumentError,
    Matcher,
    MatchType,
    matcher_to_condition,
    parse_metric_selector,
    query_to_filter_exprs,
)

QUERY = 'memory:alloc_objects:count:space:bytes{job="default"}'


def test_parse_selector_with_name_and_label():
    assert parse_metric_selector(QUERY) == [
        Matcher("__name__", MatchType.EQUAL, "memory:alloc_objects:count:space:bytes"),
        Matcher("job", MatchType.EQUAL, "default"),
    ]


def test_parse_all_operators():
    result = parse_metric_selector('{a="1", b!="2", c=~"x.*", d!~"y",}')
    assert [m.type for m in result] == [
        MatchType.EQUAL, MatchType.NOT_EQUAL, MatchType.REGEX, MatchType.NOT_REGEX,
    ]
    assert [m.value for m in result] == ["1", "2", "x.*", "y"]


def test_parse_escapes():
    assert parse_metric_selector('{a="q\\"w"}')[0].value == 'q"w'


@pytest.mark.parametrize("query", ["", "{}", '{a=""}', "x{a=", "x y", 'x{__name__="y"}', '{a=~"("}'])
def test_parse_errors(query):
    with pytest.raises(InvalidArgumentError):
        parse_metric_selector(query)


def test_query_to_filter_exprs():
    conds = query_to_filter_exprs(QUERY)
    assert conds[:5] == [
        Condition("name", "==", "memory"),
        Condition("sample_type", "==", "alloc_objects"),
        Condition("sample_unit", "==", "count"),
        Condition("period_type", "==", "space"),
        Condition("period_unit", "==", "bytes"),
    ]
    assert conds[5] == Condition("labels.job", "==", "default")
    assert conds[6] == Condition("duration", "==", 0)


def test_delta_query():
    conds = query_to_filter_exprs("memory:alloc_space:bytes:space:bytes:delta")
    assert conds[-1] == Condition("duration", "!=", 0)


def test_empty_units_query():
    conds = query_to_filter_exprs("fgprof:samples:count::")
    assert conds[3].value == ""
    assert conds[4].value == ""


@pytest.mark.parametrize("query", ['{job="default"}', "a:b:c", "not valid{"])
def test_query_errors(query):
    with pytest.raises(InvalidArgumentError):
        query_to_filter_exprs(query)


def test_conditions_match_rows():
    conds = query_to_filter_exprs(QUERY)
    row = {
        "name": "memory", "sample_type": "alloc_objects", "sample_unit": "count",
        "period_type": "space", "period_unit": "bytes", "labels.job": "default", "duration": 0,
    }
    assert all(c.matches(row) for c in conds)
    row["labels.job"] = "other"
    assert not all(c.matches(row) for c in conds)


def test_regex_condition_is_anchored():
    cond = matcher_to_condition(Matcher("job", MatchType.REGEX, "def"))
    assert cond.column == "labels.job"
    assert not cond.matches({"labels.job": "default"})
    assert cond.matches({"labels.job": "def"})
    neg = matcher_to_condition(Matcher("job", MatchType.NOT_REGEX, "def.*"))
    assert not neg.matches({"labels.job": "default"})
    assert neg.matches({})


def test_range_conditions():
    assert Condition("timestamp", ">", 1).matches({"timestamp": 2})
    assert not Condition("timestamp", "<", 1).matches({"timestamp": 2})
    assert not Condition("timestamp", ">", 1).matches({})