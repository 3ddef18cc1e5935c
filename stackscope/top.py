"""Top table generation from stack trace samples."""

from __future__ import annotations

from .models import (
    Location,
    LocationLine,
    Mapping,
    StacktraceSamples,
    Top,
    TopNode,
    TopNodeMeta,
)


def generate_top_table(samples: StacktraceSamples) -> Top:
    """Sum up cumulative and flat values per location, then aggregate by function."""
    nodes: dict[bytes, TopNode] = {}
    for sample in samples.samples:
        for depth, location in enumerate(sample.location):
            node = nodes.get(location.id)
            if node is not None:
                node.cumulative += sample.value
                node.diff += sample.diff_value
                if depth == 0:
                    node.flat += sample.value
                continue

            meta = TopNodeMeta(
                mapping=location.mapping,
                location=Location(
                    id=location.id,
                    address=location.address,
                    mapping=location.mapping,
                    is_folded=location.is_folded,
                ),
            )
            if location.lines:
                first = location.lines[0]
                meta.function = first.function
                meta.line = LocationLine(function=first.function, line=first.line)
            nodes[location.id] = TopNode(
                meta=meta,
                cumulative=sample.value,
                diff=sample.diff_value,
                flat=sample.value if depth == 0 else 0,
            )

    top = Top(
        nodes=list(nodes.values()),
        reported=len(nodes),
        total=len(nodes),
        unit=samples.meta.sample_type.unit,
    )
    return aggregate_top_by_function(top)


def _address(node: TopNode) -> int:
    location = node.meta.location if node.meta is not None else None
    return location.address if location is not None else 0


def aggregate_top_by_function(top: Top) -> Top:
    """Merge rows of the same function name, or of the same address when unsymbolized.

    Rows without metadata are dropped. The result is sorted by flat value
    descending, then by address ascending.
    """
    by_address: dict[bytes, dict[int, TopNode]] = {}
    by_function: dict[str, TopNode] = {}

    for node in top.nodes:
        if node.meta is None:
            continue
        mapping_id = node.meta.mapping.id if node.meta.mapping is not None else b""
        addresses = by_address.setdefault(mapping_id, {})

        if node.meta.function is None:
            address = _address(node)
            existing = addresses.get(address)
            if existing is None:
                addresses[address] = node
            else:
                existing.cumulative += node.cumulative
                existing.diff += node.diff
                existing.flat += node.flat
            continue

        name = node.meta.function.name
        existing = by_function.get(name)
        if existing is None:
            by_function[name] = node
            continue
        existing.cumulative += node.cumulative
        existing.diff += node.diff
        existing.flat += node.flat
        if (
            existing.meta.mapping is not None
            and node.meta.mapping is not None
            and existing.meta.mapping.id != node.meta.mapping.id
        ):
            existing.meta.mapping = Mapping()
        existing.meta.line = None

    result = [n for addresses in by_address.values() for n in addresses.values()]
    result.extend(by_function.values())
    result.sort(key=lambda n: (-n.flat, _address(n)))

    return Top(nodes=result, reported=len(result), total=top.total, unit=top.unit)