"""
Request logging for the cart API.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cartsync.logging_config import configure_logging, hash_identifier

configure_logging()
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _session_owner(request: Request) -> Optional[str]:
    """Hashed owner of the cart currently being viewed, if any"""
    session = getattr(request.app.state, "session", None)
    context = session.context if session is not None else None
    if context is None or not context.owner_email:
        return None
    return hash_identifier(context.owner_email)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Logs every request with its latency and the hashed cart owner"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        started = time.perf_counter()
        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "hashed_owner": _session_owner(request),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} failed: {type(e).__name__}",
                extra={**fields, "error_type": type(e).__name__},
                exc_info=True
            )
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} in {latency_ms:.1f}ms",
            extra={
                **fields,
                # Owner may change during login or view switches
                "hashed_owner": _session_owner(request) or fields["hashed_owner"],
                "status_code": response.status_code,
                "latency_ms": round(latency_ms, 2),
            }
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
        return response
