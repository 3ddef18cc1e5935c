# stackscope

stackscope analyses stack-sampling profiles. It keeps profile sample rows in
an in-memory table and answers queries over them. It renders the selected
profiles as flamegraphs, top tables or gzipped pprof documents. It also has
the pieces needed to describe scrape targets and build them from discovered
target groups.

## Installation

```
pip install stackscope
```

There are no runtime dependencies beyond the standard library.

## Modules

- `stackscope.models`: dataclasses for the data.
  - Input: `Mapping`, `Function`, `LocationLine`, `Location`, `Sample`,
    `ValueType`, `ProfileMeta` and `StacktraceSamples`.
  - Reports: `FlamegraphNodeMeta`, `FlamegraphNode`, `FlamegraphRootNode`,
    `Flamegraph`, `TopNodeMeta`, `TopNode` and `Top`.
  - Stacks in a `Sample` are stored leaf first.
- `stackscope.flamegraph`: flamegraph building.
  - `generate_flamegraph_flat(samples)` builds a flamegraph.
  - The result is passed through `aggregate_by_function`, which merges sibling
    frames that share a function name. Frames without a function are merged
    by address instead.
  - `merge_children`, `compare_by_name` and `equals_by_name` are the building
    blocks of that merge.
  - `location_to_tree_nodes` expands a location into one node per inlined line.
  - `FlamegraphIterator` walks a tree depth first, one step at a time.
- `stackscope.top`: top tables.
  - `generate_top_table(samples)` sums cumulative, flat and diff values per
    location.
  - `aggregate_top_by_function` then merges rows by function name, or by
    mapping and address when a row has no function.
  - Rows without metadata are dropped.
  - Rows are sorted by flat value, highest first, then by address.
- `stackscope.pprof`: pprof documents.
  - `generate_flat_pprof(samples)` builds a `PprofProfile`. Mapping, function
    and location ids are numbered from 1 in order of first use.
  - `encode_pprof` writes the gzipped protobuf wire format.
  - `decode_pprof` reads it, gzipped or not.
- `stackscope.selector`: selectors.
  - `parse_metric_selector` parses selectors such as
    `memory:alloc_objects:count:space:bytes{job="default"}` into `Matcher`s.
  - `query_to_filter_exprs` turns a profile query into `Condition`s on the
    stored columns. The name must have the form
    `<name>:<sample-type>:<sample-unit>:<period-type>:<period-unit>`, with
    `:delta` appended for delta profiles.
  - Malformed queries raise `InvalidArgumentError`, a `ValueError`.
- `stackscope.columnquery`: `ColumnQueryAPI` holds `ProfileRow`s and answers
  queries over them.
  - `labels()` and `values(label_name)` list label names and values.
  - `query_range(query, start, end)` returns `MetricsSeries` of summed
    values. Bounds are exclusive.
  - `profile_types()` lists the stored `ProfileType`s.
  - `select(selection)` resolves a selection into samples.
  - `query(selection, report_type)` renders one selection.
  - `query_diff(a, b, report_type)` renders profile `b` against profile `a`.
  - A selection is either a `SingleSelection` (an exact timestamp) or a
    `MergeSelection` (a time range).
  - `ReportType` chooses `FLAMEGRAPH`, `TOP` or `PPROF`.
  - Timestamps are milliseconds or `datetime`s. A naive `datetime` is taken
    as UTC.
  - A single selection that matches nothing raises `NotFoundError`.
- `stackscope.target`: scrape targets.
  - Configuration types: `ScrapeConfig`, `PprofProfilingConfig` and
    `TargetGroup`.
  - A `Target` exposes its URL, labels and parameters. It also has a stable
    64-bit `hash()` and `offset(interval)`, the number of seconds until its
    next scrape slot.
  - `labels_by_profiles`, `populate_labels` and `targets_from_group` build
    targets from discovered labels, one target per enabled profile.
  - Relabelling is a list of functions. One that returns `None` drops the
    target.
- `stackscope.fallback`: `fallback_not_found(app, fallback)` wraps a WSGI
  application so that any 404 response is answered by `fallback` instead.

## Example

```python
from stackscope.columnquery import ColumnQueryAPI, ProfileRow, ReportType, SingleSelection
from stackscope.models import Function, Location, LocationLine
from stackscope.pprof import decode_pprof

main = Location(id=b"\x01", address=0x1000,
                lines=[LocationLine(Function(id=b"f1", name="main"), 10)])
work = Location(id=b"\x02", address=0x2000,
                lines=[LocationLine(Function(id=b"f2", name="work"), 20)])

api = ColumnQueryAPI()
api.insert(ProfileRow(
    name="memory", sample_type="alloc_objects", sample_unit="count",
    period_type="space", period_unit="bytes",
    labels={"job": "default"}, timestamp=1,
    stacktrace=[work, main], value=3,
))

selection = SingleSelection('memory:alloc_objects:count:space:bytes{job="default"}', time=1)

flamegraph = api.query(selection)                 # ReportType.FLAMEGRAPH by default
print(flamegraph.height, flamegraph.total)        # 3 3

top = api.query(selection, ReportType.TOP)
print([node.meta.function.name for node in top.nodes])

profile = decode_pprof(api.query(selection, ReportType.PPROF))
print(len(profile.samples))                       # 1
```

## What the package does not do

stackscope has no command-line program and no network server. It does not
fetch profiles over HTTP, and it runs no scrape loops or scheduler that keep
targets up to date. Targets can be described and built, but collecting from
them is left to the caller, who then inserts `ProfileRow`s into
`ColumnQueryAPI`. Storage is in memory only: nothing is written to disk, and
rows are lost when the process ends. Raw pprof input is not turned into rows
either; rows are supplied already resolved into `Location`s.

## Running the tests

```
pip install -e ".[test]"
pytest
```