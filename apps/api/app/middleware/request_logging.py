from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emits one ``http.request`` record and the HTTP metrics per request.

    The path label is the matched route template, which only exists on the
    scope once the router has run, so it is resolved after ``call_next``.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._observe(request, 500, started, failed=True)
            raise
        self._observe(request, response.status_code, started)
        return response

    @staticmethod
    def _observe(request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
        duration = time.perf_counter() - started
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration)

        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(duration * 1000, 2),
            "workspace_id": request.headers.get("x-workspace-id"),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
