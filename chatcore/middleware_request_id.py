import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response


logger = logging.getLogger("chat.request")

HEADER = "X-Request-ID"


def request_id_of(conn: HTTPConnection) -> str:
    """The id stamped by RequestIDMiddleware, or the caller's header on paths it does not wrap (websockets)."""
    return getattr(conn.state, "request_id", None) or conn.headers.get(HEADER) or "-"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Stamps every HTTP request with an id and writes one JSON access line.

    Besides timing, the line carries the authenticated caller and the chat
    error code when the request failed; both are left on `request.state` by
    the auth dependency and the ChatError handler.
    """

    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get(HEADER) or uuid.uuid4().hex
        request.state.request_id = req_id
        start = time.perf_counter()
        response: Response = await call_next(request)
        response.headers[HEADER] = req_id
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        line = {
            "request_id": req_id,
            "method": request.method,
            "route": route,
            "status": response.status_code,
            "duration_ms": int((time.perf_counter() - start) * 1000),
            "user_id": getattr(request.state, "user_id", None),
        }
        code = getattr(request.state, "error_code", None)
        if code:
            line["error"] = code
        logger.log(logging.WARNING if response.status_code >= 500 else logging.INFO, json.dumps(line))
        return response
