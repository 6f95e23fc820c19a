import logging
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_forward(tracer: Tracer, method: str, target_url: str):
    """Context manager to create the proxy span, set common attributes, and log a start message."""
    with tracer.start_as_current_span("proxy_request") as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.target_url", target_url)
        logger.debug(f"Proxying {method} -> {target_url}")
        yield span
