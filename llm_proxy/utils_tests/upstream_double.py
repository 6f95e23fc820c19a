import asyncio
import socket
import threading
import time
from typing import List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse


class RecordingUpstream:
    """httpx.MockTransport handler that records every request it receives."""

    def __init__(self, status_code: int = 200, content: bytes = b"ok", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {"content-type": "text/plain"}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # A streamed body, as a real transport gives, so aiter_raw can consume it
        return httpx.Response(
            self.status_code, headers=self.headers, content=self._body()
        )

    async def _body(self):
        if self.content:
            yield self.content

    @property
    def last(self) -> httpx.Request:
        assert self.requests, "upstream was never called"
        return self.requests[-1]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def create_upstream_app() -> FastAPI:
    """A stand-in inference server: echoes requests, streams, and sleeps on demand."""
    app = FastAPI()
    # One record per /stream request: chunks handed to the server, and whether it stopped
    app.state.streams = []

    @app.get("/stream")
    async def stream(chunks: int = 3, delay: float = 0.5):
        record = {"sent": 0, "closed": False}
        app.state.streams.append(record)

        async def generate():
            try:
                for i in range(chunks):
                    if i:
                        await asyncio.sleep(delay)
                    yield f"chunk-{i}\n".encode()
                    record["sent"] += 1
            finally:
                record["closed"] = True

        return StreamingResponse(generate(), media_type="application/x-ndjson")

    @app.get("/slow/{delay}")
    async def slow(delay: float):
        await asyncio.sleep(delay)
        return {"delay": delay}

    @app.api_route(
        "/{path:path}",
        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    )
    async def echo(request: Request, path: str):
        body = await request.body()
        return JSONResponse(
            {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "headers": dict(request.headers),
                "body": body.decode("utf-8", "replace"),
            }
        )

    return app


class LiveServer:
    """Run an ASGI app with uvicorn on a background thread for the duration of a with-block."""

    def __init__(self, app, port: Optional[int] = None):
        self.app = app
        self.port = port or free_port()
        config = uvicorn.Config(
            app, host="127.0.0.1", port=self.port, log_level="warning"
        )
        self.server = uvicorn.Server(config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def __enter__(self) -> "LiveServer":
        self.thread.start()
        deadline = time.monotonic() + 10
        while not self.server.started:
            if not self.thread.is_alive() or time.monotonic() > deadline:
                raise RuntimeError(f"server on port {self.port} failed to start")
            time.sleep(0.01)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.server.should_exit = True
        self.thread.join(timeout=10)
        return False
