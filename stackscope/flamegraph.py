"""Flame graph generation from stack trace samples."""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Callable

from .models import (
    Flamegraph,
    FlamegraphNode,
    FlamegraphNodeMeta,
    FlamegraphRootNode,
    Location,
    LocationLine,
    Mapping,
    StacktraceSamples,
)

NodePredicate = Callable[[FlamegraphNode, FlamegraphNode], bool]


@dataclass
class _Entry:
    node: FlamegraphNode
    current_child: int = -1


class FlamegraphIterator:
    """Depth-first walk over a flame graph, driven step by step."""

    def __init__(self, root: FlamegraphNode) -> None:
        self._stack: list[_Entry] = [_Entry(root)]

    def has_more(self) -> bool:
        return bool(self._stack)

    def next_child(self) -> bool:
        """Advance to the next child of the current node; False when none is left."""
        top = self._stack[-1]
        top.current_child += 1
        return len(top.node.children) > top.current_child

    def at(self) -> FlamegraphNode:
        top = self._stack[-1]
        return top.node.children[top.current_child]

    def step_into(self) -> bool:
        top = self._stack[-1]
        if len(top.node.children) <= top.current_child:
            return False
        self._stack.append(_Entry(top.node.children[top.current_child]))
        return True

    def step_up(self) -> None:
        if self._stack:
            self._stack.pop()


def _location_id(node: FlamegraphNode) -> bytes:
    if node.meta is None or node.meta.location is None:
        return b""
    return node.meta.location.id


def _location_ref(location: Location, mapping: Mapping | None) -> Location:
    return Location(
        id=location.id,
        address=location.address,
        mapping=mapping,
        is_folded=location.is_folded,
    )


def generate_flamegraph_flat(samples: StacktraceSamples) -> Flamegraph:
    """Build a flame graph from samples, aggregated by function name."""
    root = FlamegraphNode()
    height = 0

    for sample in samples.samples:
        height = max(height, len(sample.location))
        current = root
        # Stacks are stored leaf first, so walk them from the root end.
        for location in reversed(sample.location):
            for node in reversed(location_to_tree_nodes(location)):
                node_id = _location_id(node)
                children = current.children
                index = bisect_left(children, node_id, key=_location_id)
                if index < len(children) and _location_id(children[index]) == node_id:
                    current = children[index]
                    current.cumulative += sample.value
                    current.diff += sample.diff_value
                else:
                    node.cumulative += sample.value
                    node.diff += sample.diff_value
                    children.insert(index, node)
                    current = node
                    # Inlined nodes come linked to each other; the links are rebuilt here.
                    current.children = []
        root.cumulative += sample.value
        root.diff += sample.diff_value

    flamegraph = Flamegraph(
        root=FlamegraphRootNode(
            cumulative=root.cumulative,
            diff=root.diff,
            children=root.children,
        ),
        total=root.cumulative,
        unit=samples.meta.sample_type.unit,
        height=height + 1,
    )
    return aggregate_by_function(flamegraph)


def aggregate_by_function(flamegraph: Flamegraph) -> Flamegraph:
    """Return a new flame graph whose siblings are merged by function name."""
    old_root = FlamegraphNode(
        cumulative=flamegraph.root.cumulative,
        diff=flamegraph.root.diff,
        children=flamegraph.root.children,
    )
    merge_children(old_root, compare_by_name, equals_by_name)

    tree = Flamegraph(
        root=FlamegraphRootNode(
            cumulative=flamegraph.root.cumulative,
            diff=flamegraph.root.diff,
        ),
        total=flamegraph.total,
        unit=flamegraph.unit,
        height=flamegraph.height,
    )
    new_root = FlamegraphNode(
        cumulative=flamegraph.root.cumulative,
        diff=flamegraph.root.diff,
    )
    stack = [new_root]
    walker = FlamegraphIterator(old_root)

    while walker.has_more():
        if walker.next_child():
            node = walker.at()
            copy = FlamegraphNode(meta=node.meta, cumulative=node.cumulative, diff=node.diff)
            merge_children(node, compare_by_name, equals_by_name)
            stack[-1].children.append(copy)
            if walker.step_into():
                stack.append(copy)
            continue
        walker.step_up()
        stack.pop()

    tree.root.children = new_root.children
    return tree


def merge_children(
    node: FlamegraphNode, compare: NodePredicate, equals: NodePredicate
) -> None:
    """Stably sort the children of node with compare and merge neighbours that are equal.

    compare is a less-or-equal predicate. Merging happens in place.
    """
    if len(node.children) < 2:
        return

    def order(a: FlamegraphNode, b: FlamegraphNode) -> int:
        a_first, b_first = compare(a, b), compare(b, a)
        if a_first and not b_first:
            return -1
        if b_first and not a_first:
            return 1
        return 0

    children = sorted(node.children, key=cmp_to_key(order))
    merged_cumulative = 0
    i = 0
    while i < len(children) - 1:
        current, following = children[i], children[i + 1]
        if equals(current, following):
            current.meta.line = None
            if (
                current.meta.mapping is not None
                and following.meta.mapping is not None
                and current.meta.mapping.id != following.meta.mapping.id
            ):
                current.meta.mapping = Mapping()
            merged_cumulative += following.cumulative
            current.cumulative += following.cumulative
            current.diff += following.diff
            current.children.extend(following.children)
            del children[i + 1]
            continue
        i += 1
    node.children = children

    # Safeguard against a parent smaller than the merged children.
    if node.cumulative < merged_cumulative:
        node.cumulative = merged_cumulative


def compare_by_name(a: FlamegraphNode, b: FlamegraphNode) -> bool:
    """Order nodes by function name; nodes without a function come first, by address."""
    fa, fb = a.meta.function, b.meta.function
    if fa is not None and fb is None:
        return False
    if fa is None and fb is not None:
        return True
    if fa is None and fb is None:
        return a.meta.location.address <= b.meta.location.address
    return fa.name <= fb.name


def equals_by_name(a: FlamegraphNode, b: FlamegraphNode) -> bool:
    """Whether two nodes share a function name, or an address when neither has a function."""
    fa, fb = a.meta.function, b.meta.function
    if (fa is None) != (fb is None):
        return False
    if fa is None:
        return a.meta.location.address == b.meta.location.address
    return fa.name == fb.name


def location_to_tree_nodes(location: Location) -> list[FlamegraphNode]:
    """Turn a location into flame graph nodes, one per inlined line, outermost first."""
    if location.lines:
        return _lines_to_tree_nodes(location, location.mapping, location.lines)
    return [
        FlamegraphNode(
            meta=FlamegraphNodeMeta(
                location=_location_ref(location, location.mapping),
                mapping=location.mapping,
            )
        )
    ]


def _lines_to_tree_nodes(
    location: Location, mapping: Mapping | None, lines: list[LocationLine]
) -> list[FlamegraphNode]:
    nodes: list[FlamegraphNode] = []
    previous: FlamegraphNode | None = None
    # Lines run from the innermost call outwards; each node wraps the previous one.
    for line in lines:
        node = FlamegraphNode(
            meta=FlamegraphNodeMeta(
                location=_location_ref(location, mapping),
                function=line.function,
                line=LocationLine(function=line.function, line=line.line),
                mapping=mapping,
            ),
            children=[previous] if previous is not None else [],
        )
        nodes.append(node)
        previous = node
    nodes.reverse()
    return nodes