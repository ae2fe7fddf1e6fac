from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ghostcrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("ghostcrm.request")

_QUIET_PATHS = {"/health", "/metrics"}


def _request_extra(request: Request, path: str) -> dict[str, object]:
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "organization_id": getattr(context, "organization_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=request.method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**_request_extra(request, path), "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # Route is only bound to the scope once routing ran, so resolve the label afterwards.
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(
            method=request.method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        level = logging.DEBUG if path in _QUIET_PATHS else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={**_request_extra(request, path), "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response
