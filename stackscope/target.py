"""Scrape targets and how they are built from discovered target groups."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import quote, quote_plus

PROFILE_PATH = "__profile_path__"
PROFILE_NAME = "__name__"
PROFILE_TRACE_TYPE = "trace"

RESERVED_LABEL_PREFIX = "__"
PARAM_LABEL_PREFIX = "__param_"
META_LABEL_PREFIX = "__meta_"
SCHEME_LABEL = "__scheme__"
ADDRESS_LABEL = "__address__"
JOB_LABEL = "job"
INSTANCE_LABEL = "instance"

Labels = Dict[str, str]
Params = Dict[str, List[str]]
RelabelFunc = Callable[[Labels], Optional[Labels]]

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1


class TargetHealth(str, Enum):
    """Health of a target based on its last scrape."""

    UNKNOWN = "unknown"
    GOOD = "up"
    BAD = "down"


@dataclass
class PprofProfilingConfig:
    """One profile endpoint of a target."""

    enabled: bool = True
    path: str = ""
    delta: bool = False


@dataclass
class ScrapeConfig:
    """How the targets of one job are scraped. Intervals are in seconds.

    Relabel functions run in order; one returning None drops the target.
    """

    job_name: str = ""
    scheme: str = "http"
    params: Params = field(default_factory=dict)
    scrape_interval: float = 10.0
    scrape_timeout: float = 10.0
    profiling_config: dict[str, PprofProfilingConfig] = field(default_factory=dict)
    relabel_configs: list[RelabelFunc] = field(default_factory=list)


@dataclass
class TargetGroup:
    """A set of discovered targets sharing common labels."""

    targets: list[Labels] = field(default_factory=list)
    labels: Labels = field(default_factory=dict)
    source: str = ""

    def __str__(self) -> str:
        return self.source


def _sorted(labels: Mapping[str, str]) -> Labels:
    return dict(sorted(labels.items()))


def _fnv64a(data: bytes, value: int = _FNV_OFFSET) -> int:
    for byte in data:
        value = ((value ^ byte) * _FNV_PRIME) & _MASK64
    return value


def _labels_hash(labels: Mapping[str, str]) -> int:
    data = "".join(f"{name}\xff{value}\xff" for name, value in sorted(labels.items()))
    return _fnv64a(data.encode("utf-8", errors="surrogatepass"))


def _encode_query(params: Mapping[str, list[str]]) -> str:
    return "&".join(
        f"{quote_plus(key)}={quote_plus(value)}"
        for key in sorted(params)
        for value in params[key]
    )


def _format_url(scheme: str, host: str, path: str, query: str) -> str:
    out = ""
    if scheme:
        out += scheme + ":"
    if scheme or host:
        if host or path:
            out += "//"
        out += host
    if path and not path.startswith("/") and host:
        out += "/"
    out += quote(path, safe="/:@!$&'()*+,;=")
    if query:
        out += "?" + query
    return out


class Target:
    """A single HTTP or HTTPS endpoint to scrape profiles from."""

    def __init__(
        self,
        labels: Mapping[str, str] | None,
        discovered_labels: Mapping[str, str] | None,
        params: Mapping[str, list[str]] | None = None,
    ) -> None:
        self._labels = _sorted(labels or {})
        self._discovered_labels = _sorted(discovered_labels or {})
        self._params: Params = {k: list(v) for k, v in (params or {}).items()}
        self._lock = threading.Lock()
        self.last_error: BaseException | None = None
        self.last_scrape: datetime | None = None
        self.last_scrape_duration: float = 0.0
        self.health = TargetHealth.UNKNOWN

    def __str__(self) -> str:
        return self.url()

    def __repr__(self) -> str:
        return f"Target({self.url()!r})"

    def hash(self) -> int:
        """A 64-bit identifying hash of the labels and URL."""
        value = _fnv64a(f"{_labels_hash(self._labels):016d}".encode())
        return _fnv64a(self.url().encode("utf-8", errors="surrogatepass"), value)

    def offset(self, interval: float) -> float:
        """Seconds until the next scrape cycle of this target."""
        interval_ns = round(interval * 1_000_000_000)
        if interval_ns <= 0:
            raise ValueError("interval must be positive")
        base = time.time_ns() % interval_ns
        following = base + self.hash() % interval_ns
        if following > interval_ns:
            following -= interval_ns
        return following / 1_000_000_000

    def params(self) -> Params:
        """A copy of the URL parameters of the target."""
        return {key: list(values) for key, values in self._params.items()}

    def labels(self) -> Labels:
        """A copy of the public labels, without the reserved ones."""
        return {
            name: value
            for name, value in self._labels.items()
            if not name.startswith(RESERVED_LABEL_PREFIX)
        }

    def discovered_labels(self) -> Labels:
        """A copy of the labels before any processing."""
        with self._lock:
            return dict(self._discovered_labels)

    def clone(self) -> Target:
        return Target(self.labels(), self.discovered_labels(), self.params())

    def set_discovered_labels(self, labels: Mapping[str, str]) -> None:
        with self._lock:
            self._discovered_labels = _sorted(labels)

    def url(self) -> str:
        """The URL that is scraped, with parameter labels applied."""
        params = self.params()
        for name, value in self._labels.items():
            if not name.startswith(PARAM_LABEL_PREFIX):
                continue
            key = name[len(PARAM_LABEL_PREFIX):]
            if params.get(key):
                params[key][0] = value
            else:
                params[key] = [value]
        return _format_url(
            self._labels.get(SCHEME_LABEL, ""),
            self._labels.get(ADDRESS_LABEL, ""),
            self._labels.get(PROFILE_PATH, ""),
            _encode_query(params),
        )


def labels_by_profiles(
    lset: Mapping[str, str], profiling_config: Mapping[str, PprofProfilingConfig] | None
) -> list[Labels]:
    """One label set per enabled profile, with its path and profile name added."""
    result = []
    for profile_type, cfg in (profiling_config or {}).items():
        if cfg.enabled:
            labels = dict(lset)
            labels[PROFILE_PATH] = cfg.path
            labels[PROFILE_NAME] = profile_type
            result.append(labels)
    return result


def _split_host_port(address: str) -> bool:
    """Whether address splits into host and port the way a network dialer accepts."""
    colon = address.rfind(":")
    if colon < 0:
        return False
    start = end_search = 0
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or end + 1 != colon:
            return False
        start, end_search = 1, end + 1
    elif ":" in address[:colon]:
        return False
    if "[" in address[start:] or "]" in address[end_search:]:
        return False
    return True


def _needs_port(address: str) -> bool:
    if _split_host_port(address):
        return False
    return _split_host_port(address + ":1234")


def _quoted(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _valid_value(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def populate_labels(
    lset: Mapping[str, str], cfg: ScrapeConfig
) -> tuple[Labels | None, Labels | None]:
    """Build a target's labels from discovered labels and its scrape config.

    Returns the final labels and the labels after relabelling. A target dropped
    by relabelling gives (None, labels before relabelling). Raises ValueError
    for targets that cannot be scraped.
    """
    builder = dict(lset)
    for name, value in ((JOB_LABEL, cfg.job_name), (SCHEME_LABEL, cfg.scheme)):
        if not lset.get(name, ""):
            builder[name] = value
    for key, values in cfg.params.items():
        if values:
            builder[PARAM_LABEL_PREFIX + key] = values[0]

    pre_relabel = _sorted(builder)
    relabelled: Labels | None = dict(pre_relabel)
    for relabel in cfg.relabel_configs:
        relabelled = relabel(relabelled)
        if relabelled is None:
            return None, pre_relabel
    relabelled = _sorted(relabelled)

    if not relabelled.get(ADDRESS_LABEL, ""):
        raise ValueError("no address")

    builder = dict(relabelled)
    address = relabelled[ADDRESS_LABEL]
    if _needs_port(address):
        scheme = relabelled.get(SCHEME_LABEL, "")
        if scheme in ("http", ""):
            address += ":80"
        elif scheme == "https":
            address += ":443"
        else:
            raise ValueError(f"invalid scheme: {_quoted(cfg.scheme)}")
        builder[ADDRESS_LABEL] = address

    if "/" in address:
        raise ValueError(f"{_quoted(address)} is not a valid hostname")

    for name in relabelled:
        if name.startswith(META_LABEL_PREFIX):
            del builder[name]

    if not relabelled.get(INSTANCE_LABEL, ""):
        builder[INSTANCE_LABEL] = address

    result = _sorted(builder)
    for name, value in result.items():
        if not _valid_value(value):
            raise ValueError(f"invalid label value for {_quoted(name)}: {value!r}")
    return result, relabelled


def targets_from_group(group: TargetGroup, cfg: ScrapeConfig) -> list[Target]:
    """Build the targets of a discovered group, one per enabled profile."""
    targets = []
    for index, target_labels in enumerate(group.targets):
        lset = dict(target_labels)
        for name, value in group.labels.items():
            lset.setdefault(name, value)

        for profile_lset in labels_by_profiles(_sorted(lset), cfg.profiling_config):
            profile_type = profile_lset.get(PROFILE_NAME, "")
            try:
                labels, original = populate_labels(profile_lset, cfg)
            except ValueError as exc:
                raise ValueError(f"instance {index} in group {group}: {exc}") from exc
            if labels is None and original is None:
                continue

            params = {key: list(values) for key, values in cfg.params.items()}
            profile_cfg = cfg.profiling_config.get(profile_type)
            if profile_cfg is not None and profile_cfg.delta:
                params.setdefault("seconds", []).append(str(int(cfg.scrape_timeout) - 1))
            targets.append(Target(labels, original, params))
    return targets