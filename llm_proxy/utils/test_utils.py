from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from llm_proxy.utils import describe_error
from llm_proxy.utils.traced_requests import traced_forward


class _Unprintable(Exception):
    def __str__(self):
        raise ValueError("cannot stringify")

    def __repr__(self):
        raise ValueError("cannot repr")


def test_describe_error_uses_message():
    assert describe_error(ConnectionError("refused")) == "refused"


def test_describe_error_empty_message_falls_back_to_repr():
    assert describe_error(TimeoutError()) == "TimeoutError()"


def test_describe_error_never_fails():
    assert describe_error(_Unprintable()) == "_Unprintable"


def test_traced_forward_sets_attributes_and_logs():
    span = MagicMock()
    tracer = MagicMock()

    @contextmanager
    def start_span(name):
        assert name == "proxy_request"
        yield span

    tracer.start_as_current_span.side_effect = start_span

    with patch("llm_proxy.utils.traced_requests.logger") as logger:
        with traced_forward(tracer, "POST", "http://upstream:11435/api/chat") as active:
            assert active is span

    span.set_attribute.assert_any_call("proxy.method", "POST")
    span.set_attribute.assert_any_call("proxy.target_url", "http://upstream:11435/api/chat")
    logger.debug.assert_called_once_with("Proxying POST -> http://upstream:11435/api/chat")
