"""Stack-sampling profile analysis: query stored samples, render flamegraphs, top tables and pprof, and build scrape targets."""

__version__ = "0.1.0"

__all__ = [
    "columnquery",
    "fallback",
    "flamegraph",
    "models",
    "pprof",
    "selector",
    "target",
    "top",
]