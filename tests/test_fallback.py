from stackscope.fallback import fallback_not_found


def _app(status, body=b"api"):
    def app(environ, start_response):
        start_response(status, [("Content-Type", "application/json")])
        return [body]

    return app


def _lazy_app(status, body):
    def app(environ, start_response):
        start_response(status, [("Content-Type", "text/plain")])
        yield body

    return app


def _ui(environ, start_response):
    start_response("200 OK", [("Content-Type", "text/html")])
    return [b"ui"]


class _Recorder:
    def __init__(self):
        self.calls = []
        self.written = []

    def __call__(self, status, headers, exc_info=None):
        self.calls.append((status, headers))
        return self.written.append


def _serve(app, path="/"):
    recorder = _Recorder()
    body = b"".join(app({"PATH_INFO": path}, recorder))
    return recorder, body


def test_found_response_passes_through():
    recorder, body = _serve(fallback_not_found(_app("200 OK"), _ui))
    assert body == b"api"
    assert recorder.calls == [("200 OK", [("Content-Type", "application/json")])]


def test_not_found_goes_to_fallback():
    recorder, body = _serve(fallback_not_found(_app("404 Not Found", b"missing"), _ui))
    assert body == b"ui"
    assert recorder.calls == [("200 OK", [("Content-Type", "text/html")])]


def test_lazy_not_found_goes_to_fallback():
    recorder, body = _serve(fallback_not_found(_lazy_app("404 Not Found", b"x"), _ui))
    assert body == b"ui"
    assert [status for status, _ in recorder.calls] == ["200 OK"]


def test_lazy_found_keeps_body():
    recorder, body = _serve(fallback_not_found(_lazy_app("201 Created", b"made"), _ui))
    assert body == b"made"
    assert [status for status, _ in recorder.calls] == ["201 Created"]


def test_write_callable_suppressed_on_not_found():
    def app(environ, start_response):
        write = start_response("404 Not Found", [])
        write(b"hidden")
        return []

    recorder, body = _serve(fallback_not_found(app, _ui))
    assert body == b"ui"
    assert recorder.written == []