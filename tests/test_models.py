from stackscope.models import (
    Flamegraph,
    FlamegraphNode,
    Function,
    Location,
    LocationLine,
    Mapping,
    ProfileMeta,
    Sample,
    StacktraceSamples,
    Top,
)


def test_location_mapping_id_follows_mapping():
    mapping = Mapping(id=b"\x01\x02", file="bin")
    location = Location(id=b"\x09", mapping=mapping)
    assert location.mapping_id == mapping.id


def test_location_without_mapping_has_empty_mapping_id():
    assert Location(id=b"\x09").mapping_id == b""


def test_line_function_id_follows_function():
    function = Function(id=b"\x05", name="main")
    assert LocationLine(function=function, line=3).function_id == function.id
    assert LocationLine().function_id == b""


def test_default_lists_are_not_shared():
    a = FlamegraphNode()
    b = FlamegraphNode()
    a.children.append(FlamegraphNode(cumulative=1))
    assert b.children == []
    s1, s2 = Sample(), Sample()
    s1.location.append(Location())
    assert s2.location == []


def test_defaults_compare_equal():
    assert Flamegraph() == Flamegraph()
    assert StacktraceSamples() == StacktraceSamples(meta=ProfileMeta(), samples=[])
    assert Top() == Top(nodes=[], reported=0, total=0, unit="")


def test_equality_is_structural():
    fn = Function(id=b"\x01", name="f")
    assert LocationLine(function=fn, line=2) == LocationLine(function=Function(id=b"\x01", name="f"), line=2)
    assert LocationLine(function=fn, line=2) != LocationLine(function=fn, line=3)