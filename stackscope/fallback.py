"""WSGI middleware that hands not-found responses to a fallback application."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


def _is_not_found(status: str) -> bool:
    return status.split(" ", 1)[0] == "404"


def _discard(_: bytes) -> None:
    return None


def _close(result: Iterable[bytes]) -> None:
    close = getattr(result, "close", None)
    if close is not None:
        close()


def fallback_not_found(app: WSGIApp, fallback: WSGIApp) -> WSGIApp:
    """Serve with app, but answer with fallback whenever app responds 404."""

    def middleware(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        state: dict[str, Any] = {"status": None, "wrote": False, "write": _discard}

        def capture(status: str, headers: list, exc_info: Any = None) -> Callable[[bytes], Any]:
            if not state["wrote"]:
                state["status"] = status
                if not _is_not_found(status):
                    state["wrote"] = True
                    state["write"] = start_response(status, headers, exc_info)
            return lambda data: None if _is_not_found(state["status"]) else state["write"](data)

        result = app(environ, capture)
        iterator = iter(result)
        buffered: list[bytes] = []
        exhausted = False
        while state["status"] is None:
            try:
                buffered.append(next(iterator))
            except StopIteration:
                exhausted = True
                break

        if state["status"] is not None and _is_not_found(state["status"]):
            _close(result)
            return fallback(environ, start_response)

        def body() -> Iterator[bytes]:
            try:
                yield from buffered
                if not exhausted:
                    yield from iterator
            finally:
                _close(result)

        return body()

    return middleware