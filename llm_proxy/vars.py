import os
from typing import Optional

SERVICE_NAME = os.getenv("SERVICE_NAME", "llm-proxy")

LISTEN_HOST = "0.0.0.0"
LISTEN_PORT = 11434

DEFAULT_UPSTREAM = "http://localhost:11435"


def upstream_from_env() -> str:
    # An empty OLLAMA_UPSTREAM counts as unset
    return os.environ.get("OLLAMA_UPSTREAM") or DEFAULT_UPSTREAM


def _parse_timeout(raw: str) -> Optional[float]:
    if not raw:
        return None
    return float(raw)


# Seconds; unset means the upstream may take as long as it needs
PROXY_TIMEOUT = _parse_timeout(os.getenv("PROXY_TIMEOUT", ""))

LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
