"""Shared error response builder.

Every non-2xx response uses one envelope:
- code: machine-readable error code (e.g. "SIGNATURE_INVALID")
- message: human-readable message
- details: optional context (never secrets, signatures or payloads)
- request_id: correlation id, also sent as X-Request-Id
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

REQUEST_ID_HEADER = "X-Request-Id"


def _get_request_id(request: Request) -> str:
    """request.state.request_id, then the X-Request-Id header, then a new UUID."""
    request_id: str | None = getattr(request.state, "request_id", None)
    if request_id is not None:
        return str(request_id)

    header_id: str | None = request.headers.get(REQUEST_ID_HEADER)
    if header_id:
        return header_id

    return str(uuid.uuid4())


def make_error_response_no_request(
    *,
    code: str,
    message: str,
    http_status: int,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the error envelope when only the request id is at hand."""
    if request_id is None:
        request_id = str(uuid.uuid4())

    body: dict[str, Any] = {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }

    response = JSONResponse(status_code=http_status, content=body, headers=headers)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def make_error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the error envelope for a request.

    Args:
        request: Incoming request (request_id source).
        code: Machine-readable error code.
        message: Human-readable message.
        http_status: HTTP status code.
        details: Optional structured context.
        headers: Extra response headers (e.g. Retry-After).
    """
    return make_error_response_no_request(
        code=code,
        message=message,
        http_status=http_status,
        request_id=_get_request_id(request),
        details=details,
        headers=headers,
    )


HTTP_STATUS_TO_CODE: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "UNPROCESSABLE_ENTITY",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def get_error_code_for_status(status_code: int) -> str:
    return HTTP_STATUS_TO_CODE.get(status_code, "ERROR")
