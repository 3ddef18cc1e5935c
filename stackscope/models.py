"""Data types shared by the profile query reports."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Mapping:
    """A memory mapping of a binary that locations belong to."""

    id: bytes = b""
    start: int = 0
    limit: int = 0
    offset: int = 0
    file: str = ""
    build_id: str = ""
    has_functions: bool = False
    has_filenames: bool = False
    has_line_numbers: bool = False
    has_inline_frames: bool = False


@dataclass
class Function:
    """A symbolized function."""

    id: bytes = b""
    start_line: int = 0
    name: str = ""
    system_name: str = ""
    filename: str = ""


@dataclass
class LocationLine:
    """A source line of a location, pointing at the function it belongs to."""

    function: Function | None = None
    line: int = 0

    @property
    def function_id(self) -> bytes:
        return self.function.id if self.function is not None else b""


@dataclass
class Location:
    """A program counter, with its mapping and inlined source lines.

    Lines are ordered from the innermost inlined call outwards.
    """

    id: bytes = b""
    address: int = 0
    mapping: Mapping | None = None
    is_folded: bool = False
    lines: list[LocationLine] = field(default_factory=list)

    @property
    def mapping_id(self) -> bytes:
        return self.mapping.id if self.mapping is not None else b""


@dataclass
class Sample:
    """A stack trace (leaf first) with its value and diff value."""

    location: list[Location] = field(default_factory=list)
    value: int = 0
    diff_value: int = 0
    label: dict[str, list[str]] = field(default_factory=dict)
    num_label: dict[str, list[int]] = field(default_factory=dict)
    num_unit: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ValueType:
    """A type and unit pair, such as alloc_objects/count."""

    type: str = ""
    unit: str = ""


@dataclass
class ProfileMeta:
    """Metadata of a profile; the timestamp is in milliseconds."""

    timestamp: int = 0
    duration: int = 0
    period: int = 0
    period_type: ValueType = field(default_factory=ValueType)
    sample_type: ValueType = field(default_factory=ValueType)


@dataclass
class StacktraceSamples:
    """A profile as a list of resolved stack trace samples."""

    meta: ProfileMeta = field(default_factory=ProfileMeta)
    samples: list[Sample] = field(default_factory=list)


@dataclass
class FlamegraphNodeMeta:
    """What a flame graph node stands for."""

    location: Location | None = None
    mapping: Mapping | None = None
    function: Function | None = None
    line: LocationLine | None = None


@dataclass
class FlamegraphNode:
    """A node of a flame graph."""

    meta: FlamegraphNodeMeta | None = None
    cumulative: int = 0
    diff: int = 0
    children: list[FlamegraphNode] = field(default_factory=list)


@dataclass
class FlamegraphRootNode:
    """The root of a flame graph."""

    cumulative: int = 0
    diff: int = 0
    children: list[FlamegraphNode] = field(default_factory=list)


@dataclass
class Flamegraph:
    """A flame graph report."""

    root: FlamegraphRootNode = field(default_factory=FlamegraphRootNode)
    total: int = 0
    unit: str = ""
    height: int = 0


@dataclass
class TopNodeMeta:
    """What a top table row stands for."""

    location: Location | None = None
    mapping: Mapping | None = None
    function: Function | None = None
    line: LocationLine | None = None


@dataclass
class TopNode:
    """A row of a top table."""

    meta: TopNodeMeta | None = None
    cumulative: int = 0
    flat: int = 0
    diff: int = 0


@dataclass
class Top:
    """A top table report."""

    nodes: list[TopNode] = field(default_factory=list)
    reported: int = 0
    total: int = 0
    unit: str = ""