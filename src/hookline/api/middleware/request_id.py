"""Request ID middleware.

Every request gets an id for log correlation and audit records.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from hookline.api.error_model import REQUEST_ID_HEADER


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request id to request.state and the X-Request-Id response header.

    A non-empty inbound X-Request-Id is reused; otherwise a uuid4 is generated.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER)
        request_id = incoming.strip() if incoming and incoming.strip() else str(uuid.uuid4())

        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
