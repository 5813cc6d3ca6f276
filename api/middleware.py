import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from core.logging import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id (the caller's X-Request-ID when sent) and
    exposes it to route handlers, log records and the response headers,
    together with the handling latency.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
        finally:
            request_id_var.reset(token)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)",
            extra={"request_id": request_id}
        )
        return response
