from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from llm_proxy.forwarder import routes
from llm_proxy.vars import (
    LISTEN_HOST,
    LISTEN_PORT,
    LOG_LEVEL,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PROXY_TIMEOUT,
    SERVICE_NAME,
    upstream_from_env,
)


def is_response_body_span(span: ReadableSpan) -> bool:
    # The ASGI instrumentation opens one of these per streamed chunk
    attributes = span.attributes or {}
    return attributes.get("asgi.event.type") == "http.response.body"


class ChunkSpanDroppingExporter(SpanExporter):
    """Delegating exporter that keeps per-chunk send spans of streamed completions out of traces."""

    def __init__(self, inner: SpanExporter):
        self._inner = inner

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not is_response_body_span(span)]
        return self._inner.export(kept) if kept else SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        self._inner.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self._inner.force_flush(timeout_millis)


def _parse_otlp_headers(raw: str) -> Optional[dict]:
    headers = {}
    for entry in raw.split(","):
        if "=" in entry:
            key, val = entry.split("=", 1)
            if key.strip():
                headers[key.strip()] = val.strip()
    return headers or None


def configure_tracing(app: FastAPI) -> None:
    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        trace.set_tracer_provider(
            TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
        )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=_parse_otlp_headers(OTLP_HEADERS),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(ChunkSpanDroppingExporter(otlp_exporter))
        )

    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


def build_upstream_client() -> httpx.AsyncClient:
    """One pooled client shared by every request for the life of the process."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        follow_redirects=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with build_upstream_client() as client:
        app.state.upstream_client = client
        yield


def create_app(upstream_url: Optional[str] = None) -> FastAPI:
    """
    Build the proxy application.

    The upstream is resolved once here, from ``OLLAMA_UPSTREAM`` unless
    given explicitly, and stays fixed for the lifetime of the app.
    """
    app = FastAPI(lifespan=lifespan)
    app.state.upstream_url = upstream_url or upstream_from_env()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )
    configure_tracing(app)
    app.router.routes.extend(routes)
    return app


app = create_app()


def main() -> None:
    print(
        f"LLM proxy listening on {LISTEN_HOST}:{LISTEN_PORT} -> {app.state.upstream_url}",
        flush=True,
    )
    # uvicorn exits with status 1 when the socket cannot be bound
    uvicorn.run(app, host=LISTEN_HOST, port=LISTEN_PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
