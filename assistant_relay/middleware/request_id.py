import json
import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger("assistant_relay.http")


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-Id, persists on request.state, and echoes on response.

    Also emits a minimal JSON log for each request with method, path, status, and latency_ms.
    """

    HEADER = "X-Request-Id"

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()
        req_id = request.headers.get(self.HEADER) or str(uuid.uuid4())
        request.state.request_id = req_id

        response = await call_next(request)
        response.headers[self.HEADER] = req_id

        try:
            logger.info(json.dumps({
                "event": "http_request",
                "requestId": req_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": int((time.time() - start) * 1000),
            }))
        except Exception:
            # Never fail the request on logging errors
            pass

        return response
