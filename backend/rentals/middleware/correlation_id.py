from __future__ import annotations

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with a correlation id so support can line up logs and error bodies."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        incoming = request.headers.get(HEADER)
        if incoming and incoming.strip():
            cid = incoming.strip()[:128]
        else:
            cid = str(uuid.uuid4())

        request.state.correlation_id = cid

        response: Response = await call_next(request)
        response.headers[HEADER] = cid
        return response
