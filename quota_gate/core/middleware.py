"""HTTP middleware for request correlation and rate limit headers.

- ``request_id_middleware`` accepts or generates a request id, exposes it to
  the logging context and echoes it back with the request duration.
- ``rate_limit_headers_middleware`` copies the admission metadata left on
  ``request.state.rate_limit`` by the rate limit dependency into the response
  headers of admitted requests. Denied requests already carry their headers on
  the 429 raised by the dependency.

Usage:
    app.middleware("http")(rate_limit_headers_middleware)
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from quota_gate.core.config import settings
from quota_gate.core.logging import clear_request_id, set_request_id
from quota_gate.core.rate_limit import build_rate_limit_headers


async def request_id_middleware(request: Request, call_next) -> Response:
    """Propagate a correlation id through logs and response headers.

    The header name is configurable via LOG_REQUEST_ID_HEADER. The id is
    cleared from the context once the response is produced.

    Example:
        >>> # Headers: {"X-Request-ID": "req-abc-123"}
        >>> # Response: {"X-Request-ID": "req-abc-123", "X-Request-Duration-ms": "4.67"}
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def rate_limit_headers_middleware(request: Request, call_next) -> Response:
    """Attach X-RateLimit-* headers to responses of admitted requests."""

    response: Response = await call_next(request)

    result = getattr(request.state, "rate_limit", None)
    if result is None or not result.allowed or not settings.rate_limit.include_headers:
        return response

    for name, value in build_rate_limit_headers(result).items():
        response.headers.setdefault(name, value)
    return response
