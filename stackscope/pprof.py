"""Conversion of stack trace samples to the pprof profile format."""

from __future__ import annotations

import gzip
from dataclasses import dataclass, field
from typing import Iterator

from .models import StacktraceSamples, ValueType


@dataclass
class PprofMapping:
    id: int = 0
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
class PprofFunction:
    id: int = 0
    name: str = ""
    system_name: str = ""
    filename: str = ""
    start_line: int = 0


@dataclass
class PprofLine:
    function: PprofFunction | None = None
    line: int = 0


@dataclass
class PprofLocation:
    id: int = 0
    mapping: PprofMapping | None = None
    address: int = 0
    lines: list[PprofLine] = field(default_factory=list)
    is_folded: bool = False


@dataclass
class PprofSample:
    location: list[PprofLocation] = field(default_factory=list)
    value: list[int] = field(default_factory=list)
    label: dict[str, list[str]] = field(default_factory=dict)
    num_label: dict[str, list[int]] = field(default_factory=dict)
    num_unit: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class PprofProfile:
    sample_type: list[ValueType] = field(default_factory=list)
    samples: list[PprofSample] = field(default_factory=list)
    mappings: list[PprofMapping] = field(default_factory=list)
    locations: list[PprofLocation] = field(default_factory=list)
    functions: list[PprofFunction] = field(default_factory=list)
    time_nanos: int = 0
    duration_nanos: int = 0
    period_type: ValueType | None = None
    period: int = 0


def generate_flat_pprof(samples: StacktraceSamples) -> PprofProfile:
    """Build a pprof profile; ids are numbered from 1 in order of first use."""
    meta = samples.meta
    mappings: dict[bytes, PprofMapping] = {}
    functions: dict[bytes, PprofFunction] = {}
    locations: dict[bytes, PprofLocation] = {}

    profile = PprofProfile(
        period_type=ValueType(meta.period_type.type, meta.period_type.unit),
        sample_type=[ValueType(meta.sample_type.type, meta.sample_type.unit)],
        # Timestamps are kept in milliseconds.
        time_nanos=meta.timestamp * 1_000_000,
        duration_nanos=meta.duration,
        period=meta.period,
    )

    for sample in samples.samples:
        stack: list[PprofLocation] = []
        for loc in sample.location:
            existing = locations.get(loc.id)
            if existing is not None:
                stack.append(existing)
                continue

            mapping = None
            if loc.mapping is not None:
                lm = loc.mapping
                mapping = mappings.get(lm.id)
                if mapping is None:
                    mapping = PprofMapping(
                        start=lm.start,
                        limit=lm.limit,
                        offset=lm.offset,
                        file=lm.file,
                        build_id=lm.build_id,
                        has_functions=lm.has_functions,
                        has_filenames=lm.has_filenames,
                        has_line_numbers=lm.has_line_numbers,
                        has_inline_frames=lm.has_inline_frames,
                    )
                    mappings[lm.id] = mapping

            lines = []
            for line in loc.lines:
                function = None
                if line.function is not None:
                    lf = line.function
                    function = functions.get(lf.id)
                    if function is None:
                        function = PprofFunction(
                            name=lf.name,
                            system_name=lf.system_name,
                            filename=lf.filename,
                            start_line=lf.start_line,
                        )
                        functions[lf.id] = function
                lines.append(PprofLine(function=function, line=line.line))

            address = loc.address + (mapping.offset if mapping is not None else 0)
            location = PprofLocation(
                mapping=mapping, address=address, lines=lines, is_folded=loc.is_folded
            )
            locations[loc.id] = location
            stack.append(location)

        value = sample.value
        if value == 0 and sample.diff_value != 0:
            value = sample.diff_value
        profile.samples.append(
            PprofSample(
                location=stack,
                value=[value],
                label=sample.label,
                num_label=sample.num_label,
                num_unit=sample.num_unit,
            )
        )

    for number, item in enumerate(mappings.values(), 1):
        item.id = number
    for number, item in enumerate(functions.values(), 1):
        item.id = number
    for number, item in enumerate(locations.values(), 1):
        item.id = number
    profile.mappings = list(mappings.values())
    profile.functions = list(functions.values())
    profile.locations = list(locations.values())
    return profile


# --- wire format -----------------------------------------------------------

_MASK64 = (1 << 64) - 1


def _varint(value: int) -> bytes:
    value &= _MASK64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


class _Writer:
    def __init__(self) -> None:
        self.buf = bytearray()

    def uint(self, number: int, value: int) -> None:
        if value:
            self.buf += _varint(number << 3) + _varint(value)

    def raw(self, number: int, data: bytes) -> None:
        self.buf += _varint(number << 3 | 2) + _varint(len(data)) + data

    def packed(self, number: int, values: list[int]) -> None:
        if values:
            self.raw(number, b"".join(_varint(v) for v in values))


class _Strings:
    def __init__(self) -> None:
        self.index: dict[str, int] = {"": 0}

    def __call__(self, text: str) -> int:
        return self.index.setdefault(text, len(self.index))


def _value_type(vt: ValueType, strings: _Strings) -> bytes:
    w = _Writer()
    w.uint(1, strings(vt.type))
    w.uint(2, strings(vt.unit))
    return bytes(w.buf)


def encode_pprof(profile: PprofProfile) -> bytes:
    """Serialize a profile as gzip-compressed pprof protobuf."""
    strings = _Strings()
    w = _Writer()
    for vt in profile.sample_type:
        w.raw(1, _value_type(vt, strings))
    for sample in profile.samples:
        sw = _Writer()
        sw.packed(1, [loc.id for loc in sample.location])
        sw.packed(2, sample.value)
        for key, values in sample.label.items():
            for text in values:
                lw = _Writer()
                lw.uint(1, strings(key))
                lw.uint(2, strings(text))
                sw.raw(3, bytes(lw.buf))
        for key, nums in sample.num_label.items():
            units = sample.num_unit.get(key, [])
            for i, num in enumerate(nums):
                lw = _Writer()
                lw.uint(1, strings(key))
                lw.uint(3, num)
                if i < len(units):
                    lw.uint(4, strings(units[i]))
                sw.raw(3, bytes(lw.buf))
        w.raw(2, bytes(sw.buf))
    for m in profile.mappings:
        mw = _Writer()
        mw.uint(1, m.id)
        mw.uint(2, m.start)
        mw.uint(3, m.limit)
        mw.uint(4, m.offset)
        mw.uint(5, strings(m.file))
        mw.uint(6, strings(m.build_id))
        mw.uint(7, int(m.has_functions))
        mw.uint(8, int(m.has_filenames))
        mw.uint(9, int(m.has_line_numbers))
        mw.uint(10, int(m.has_inline_frames))
        w.raw(3, bytes(mw.buf))
    for loc in profile.locations:
        lw = _Writer()
        lw.uint(1, loc.id)
        lw.uint(2, loc.mapping.id if loc.mapping is not None else 0)
        lw.uint(3, loc.address)
        for line in loc.lines:
            liw = _Writer()
            liw.uint(1, line.function.id if line.function is not None else 0)
            liw.uint(2, line.line)
            lw.raw(4, bytes(liw.buf))
        lw.uint(5, int(loc.is_folded))
        w.raw(4, bytes(lw.buf))
    for fn in profile.functions:
        fw = _Writer()
        fw.uint(1, fn.id)
        fw.uint(2, strings(fn.name))
        fw.uint(3, strings(fn.system_name))
        fw.uint(4, strings(fn.filename))
        fw.uint(5, fn.start_line)
        w.raw(5, bytes(fw.buf))
    w.uint(9, profile.time_nanos)
    w.uint(10, profile.duration_nanos)
    if profile.period_type is not None:
        w.raw(11, _value_type(profile.period_type, strings))
    w.uint(12, profile.period)
    for text in strings.index:
        w.raw(6, text.encode())
    return gzip.compress(bytes(w.buf))


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
        shift += 7


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire = key >> 3, key & 7
        if wire == 0:
            value, pos = _read_varint(data, pos)
            yield number, wire, value
        elif wire == 2:
            size, pos = _read_varint(data, pos)
            if pos + size > len(data):
                raise ValueError("truncated field")
            yield number, wire, data[pos:pos + size]
            pos += size
        elif wire in (1, 5):
            size = 8 if wire == 1 else 4
            yield number, wire, data[pos:pos + size]
            pos += size
        else:
            raise ValueError(f"unsupported wire type {wire}")


def _signed(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def _ints(wire: int, value: int | bytes) -> list[int]:
    if wire == 0:
        return [value]
    out, pos = [], 0
    while pos < len(value):
        v, pos = _read_varint(value, pos)
        out.append(v)
    return out


def _scalars(data: bytes) -> dict[int, int]:
    return {n: v for n, w, v in _fields(data) if w == 0}


def decode_pprof(data: bytes) -> PprofProfile:
    """Parse a pprof protobuf, gzip-compressed or not."""
    if data[:2] == b"\x1f\x8b":
        data = gzip.decompress(data)
    raw: dict[int, list] = {}
    scalars: dict[int, int] = {}
    for number, wire, value in _fields(data):
        if wire == 0:
            scalars[number] = value
        else:
            raw.setdefault(number, []).append(value)
    strings = [b.decode() for b in raw.get(6, [])]

    def text(index: int) -> str:
        if index >= len(strings):
            raise ValueError("string index out of range")
        return strings[index]

    def value_type(blob: bytes) -> ValueType:
        s = _scalars(blob)
        return ValueType(text(s.get(1, 0)), text(s.get(2, 0)))

    profile = PprofProfile(
        sample_type=[value_type(b) for b in raw.get(1, [])],
        time_nanos=_signed(scalars.get(9, 0)),
        duration_nanos=_signed(scalars.get(10, 0)),
        period=_signed(scalars.get(12, 0)),
        period_type=value_type(raw[11][0]) if 11 in raw else None,
    )
    for blob in raw.get(3, []):
        s = _scalars(blob)
        profile.mappings.append(PprofMapping(
            id=s.get(1, 0), start=s.get(2, 0), limit=s.get(3, 0), offset=s.get(4, 0),
            file=text(s.get(5, 0)), build_id=text(s.get(6, 0)),
            has_functions=bool(s.get(7)), has_filenames=bool(s.get(8)),
            has_line_numbers=bool(s.get(9)), has_inline_frames=bool(s.get(10)),
        ))
    for blob in raw.get(5, []):
        s = _scalars(blob)
        profile.functions.append(PprofFunction(
            id=s.get(1, 0), name=text(s.get(2, 0)), system_name=text(s.get(3, 0)),
            filename=text(s.get(4, 0)), start_line=_signed(s.get(5, 0)),
        ))
    mappings = {m.id: m for m in profile.mappings}
    functions = {f.id: f for f in profile.functions}
    for blob in raw.get(4, []):
        loc = PprofLocation()
        for number, wire, value in _fields(blob):
            if number == 1:
                loc.id = value
            elif number == 2:
                loc.mapping = mappings.get(value)
            elif number == 3:
                loc.address = value
            elif number == 4:
                s = _scalars(value)
                loc.lines.append(PprofLine(functions.get(s.get(1, 0)), _signed(s.get(2, 0))))
            elif number == 5:
                loc.is_folded = bool(value)
        profile.locations.append(loc)
    locations = {loc.id: loc for loc in profile.locations}
    for blob in raw.get(2, []):
        sample = PprofSample()
        for number, wire, value in _fields(blob):
            if number == 1:
                for loc_id in _ints(wire, value):
                    if loc_id not in locations:
                        raise ValueError(f"unknown location id {loc_id}")
                    sample.location.append(locations[loc_id])
            elif number == 2:
                sample.value.extend(_signed(v) for v in _ints(wire, value))
            elif number == 3:
                s = _scalars(value)
                key = text(s.get(1, 0))
                if s.get(2):
                    sample.label.setdefault(key, []).append(text(s[2]))
                else:
                    sample.num_label.setdefault(key, []).append(_signed(s.get(3, 0)))
                    if s.get(4):
                        sample.num_unit.setdefault(key, []).append(text(s[4]))
        profile.samples.append(sample)
    return profile