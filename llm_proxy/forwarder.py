import logging
from typing import AsyncIterator, List, Tuple

import httpx
from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from llm_proxy.utils import describe_error
from llm_proxy.utils.traced_requests import traced_forward

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be relayed back to the caller (RFC 9110)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# The body is re-sent as one buffer, so the client recomputes its framing
BODY_FRAMING_HEADERS = {"content-length", "transfer-encoding"}


def get_target_url(request: Request, upstream_url: str) -> str:
    """
    Concatenate the upstream base with the inbound path and query string.

    The raw path is used as received, so duplicate slashes and
    percent-encodings reach the upstream unchanged.
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    if not path:
        path = "/"

    query_string = request.scope.get("query_string", b"").decode("latin-1")
    if query_string:
        path = f"{path}?{query_string}"

    return f"{upstream_url}{path}"


def prepare_headers(request: Request) -> List[Tuple[bytes, bytes]]:
    """
    Clone the inbound headers as raw bytes, repeated ones included, minus body framing.

    Values are not decoded, so non-ASCII bytes reach the upstream untouched.
    """
    return [
        (name, value)
        for name, value in request.headers.raw
        if name.lower().decode("latin-1") not in BODY_FRAMING_HEADERS
    ]


def filter_response_headers(headers: httpx.Headers) -> List[Tuple[bytes, bytes]]:
    """Raw upstream headers that still apply once the body is re-streamed."""
    relayed = []
    for name, value in headers.raw:
        lowered = name.lower()
        if lowered.decode("latin-1") in HOP_BY_HOP_HEADERS or lowered == b"content-length":
            continue
        relayed.append((lowered, value))
    return relayed


async def read_body(request: Request) -> bytes:
    """Buffer the whole inbound body; a failed read forwards an empty body."""
    try:
        return await request.body()
    except Exception as e:
        logger.warning(
            f"Failed to read body of {request.method} {request.url.path}, "
            f"forwarding empty body: {describe_error(e)}"
        )
        return b""


async def stream_upstream(response: httpx.Response) -> AsyncIterator[bytes]:
    """
    Relay the upstream body exactly as it arrives on the wire.

    Raw bytes are used so compressed bodies keep matching their
    ``content-encoding`` header. The upstream response is closed when the
    stream finishes, fails, or the caller goes away.
    """
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already sent; aborting tells the caller the body is truncated
        logger.error(f"Upstream stream failed mid-response: {describe_error(e)}")
        raise
    finally:
        await response.aclose()


def error_response(exc: BaseException) -> PlainTextResponse:
    return PlainTextResponse(f"Proxy error: {describe_error(exc)}", status_code=502)


async def forward_request(request: Request) -> Response:
    """
    Forward the inbound request to the configured upstream.

    Method, headers and the buffered body are sent unchanged to
    ``upstream + path + query``; the upstream status, headers and body
    stream are relayed back. Any failure to reach the upstream becomes a
    plain-text 502.
    """
    client: httpx.AsyncClient = request.app.state.upstream_client
    target_url = get_target_url(request, request.app.state.upstream_url)

    with traced_forward(tracer, request.method, target_url) as span:
        headers = prepare_headers(request)
        body = await read_body(request)

        try:
            # Built directly so the client's default headers are not added
            upstream_request = httpx.Request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body,
                extensions={"timeout": client.timeout.as_dict()},
            )
            upstream_response = await client.send(upstream_request, stream=True)

        except httpx.TimeoutException as e:
            logger.error(f"Proxy timeout for {target_url}: {describe_error(e)}")
            span.set_attribute("proxy.error", "timeout")
            return error_response(e)

        except httpx.ConnectError as e:
            logger.error(f"Failed to connect to upstream {target_url}: {describe_error(e)}")
            span.set_attribute("proxy.error", "connection_failed")
            return error_response(e)

        except Exception as e:
            logger.error(f"Proxy error for {target_url}: {describe_error(e)}", exc_info=True)
            span.set_attribute("proxy.error", describe_error(e))
            return error_response(e)

        span.set_attribute("proxy.status_code", upstream_response.status_code)

        response = StreamingResponse(
            stream_upstream(upstream_response),
            status_code=upstream_response.status_code,
        )
        response.raw_headers.extend(filter_response_headers(upstream_response.headers))
        return response


class ForwardingEndpoint:
    """
    ASGI endpoint for the catch-all routes.

    Starlette only skips its method check for ASGI endpoints, so extension
    methods such as PROPFIND or PURGE are forwarded instead of getting a 405.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        response = await forward_request(request)
        await response(scope, receive, send)


# The root path and every nested path share one handler
routes = [
    Route("/", endpoint=ForwardingEndpoint(), name="proxy_root", include_in_schema=False),
    Route("/{path:path}", endpoint=ForwardingEndpoint(), name="proxy_all", include_in_schema=False),
]
