import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

PROBLEM_TYPE_VALIDATION = "https://ordersync.dev/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://ordersync.dev/problems/domain-error"
PROBLEM_TYPE_AUTHENTICATION = "https://ordersync.dev/problems/authentication"
PROBLEM_TYPE_CONFLICT = "https://ordersync.dev/problems/conflict"
PROBLEM_TYPE_NOT_FOUND = "https://ordersync.dev/problems/not-found"
PROBLEM_TYPE_PAYLOAD_TOO_LARGE = "https://ordersync.dev/problems/payload-too-large"
PROBLEM_TYPE_RATE_LIMIT = "https://ordersync.dev/problems/rate-limited"
PROBLEM_TYPE_UNAVAILABLE = "https://ordersync.dev/problems/unavailable"
PROBLEM_TYPE_SERVER = "https://ordersync.dev/problems/server-error"


def _resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def _resolve_title(status_code: int, fallback: str | None) -> str:
    if fallback:
        return fallback
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _resolve_type(status_code: int, type_override: str | None) -> str:
    if type_override:
        return type_override
    if status_code in (status.HTTP_400_BAD_REQUEST, status.HTTP_422_UNPROCESSABLE_ENTITY):
        return PROBLEM_TYPE_VALIDATION
    if status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        return PROBLEM_TYPE_AUTHENTICATION
    if status_code == status.HTTP_404_NOT_FOUND:
        return PROBLEM_TYPE_NOT_FOUND
    if status_code == status.HTTP_409_CONFLICT:
        return PROBLEM_TYPE_CONFLICT
    if status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE:
        return PROBLEM_TYPE_PAYLOAD_TOO_LARGE
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return PROBLEM_TYPE_RATE_LIMIT
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        return PROBLEM_TYPE_UNAVAILABLE
    if status_code >= 500:
        return PROBLEM_TYPE_SERVER
    return PROBLEM_TYPE_DOMAIN


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render an RFC 7807 body that carries the request ID."""
    request_id = _resolve_request_id(request)
    content = {
        "type": _resolve_type(status, type_),
        "title": _resolve_title(status, title),
        "status": status,
        "detail": detail,
        "request_id": request_id,
        "errors": errors or [],
    }
    response = JSONResponse(
        status_code=status,
        content=content,
        headers=headers,
        media_type="application/problem+json",
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response
