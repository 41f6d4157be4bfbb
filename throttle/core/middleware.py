"""HTTP middleware for request ID propagation and access logging.

Every request/response pair carries a request ID so rate limit decisions
logged during the request can be correlated with the client's call. Each
request ends with one ``http.request`` log line; throttled (429) responses
are logged at WARNING.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response, status

from throttle.core.config import settings
from throttle.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Accept or generate a request ID, echo it and log the request outcome.

    The incoming header (``LOG_REQUEST_ID_HEADER``, default ``X-Request-ID``)
    is reused when present, otherwise a UUID4 is generated. The ID lives in a
    context variable for the duration of the request and is cleared afterwards.
    The response also gets ``X-Request-Duration-ms``.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        throttled = response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        logger.log(
            logging.WARNING if throttled else logging.INFO,
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "throttled": throttled,
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
