# Ensure tests import the package from this checkout even when it is not installed.
import os
import sys
from types import SimpleNamespace

import pytest
from starlette.requests import Request

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from llm_proxy.utils_tests.upstream_double import RecordingUpstream  # noqa: E402


def _raw(value) -> bytes:
    return value if isinstance(value, bytes) else value.encode("latin-1")


@pytest.fixture
def recording_upstream():
    """Mock upstream that records the requests the proxy sends it."""
    return RecordingUpstream()


@pytest.fixture
def make_request():
    """
    Build a real Starlette Request from raw parts.

    ``state`` becomes ``request.app.state``; ``body`` may be bytes or an
    exception, which is raised when the body is read. Header names and
    values may be str or raw bytes.
    """

    def _make(
        method="GET",
        raw_path=b"/",
        query_string=b"",
        headers=None,
        body=b"",
        state=None,
    ):
        async def receive():
            if isinstance(body, BaseException):
                raise body
            return {"type": "http.request", "body": body, "more_body": False}

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "server": ("localhost", 11434),
            "client": ("127.0.0.1", 54321),
            "root_path": "",
            "path": raw_path.decode("latin-1"),
            "raw_path": raw_path,
            "query_string": query_string,
            "headers": [
                (_raw(k).lower(), _raw(v))
                for k, v in (headers or [("host", "localhost:11434")])
            ],
            "app": SimpleNamespace(state=state or SimpleNamespace()),
        }
        return Request(scope, receive)

    return _make
