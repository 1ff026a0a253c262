from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyrelay.apps.api.response import response_meta
from notifyrelay.core.errors import EventValidationError


logger = logging.getLogger(__name__)

# Codes for framework-raised errors; routes pass their own code in the detail dict.
_STATUS_CODES: dict[int, str] = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "REQUEST_INVALID",
}

# Producers branch on these, so each validation reason gets a stable code.
_EVENT_REASON_CODES: dict[str, str] = {
    "malformed": "EVENT_MALFORMED",
    "unknown_event_type": "EVENT_TYPE_UNKNOWN",
}


def _error_json(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(
        content={"error": error, "meta": response_meta(request)},
        status_code=status_code,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or _STATUS_CODES.get(exc.status_code, "HTTP_ERROR"))
        message = str(detail.get("message") or "Request failed")
    else:
        code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
        message = str(detail)
    return _error_json(request, status_code=exc.status_code, code=code, message=message, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Query and path parameter problems; event bodies are checked by the event parser instead.
    return _error_json(
        request,
        status_code=422,
        code=_STATUS_CODES[422],
        message="Invalid request parameters",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def event_validation_exception_handler(request: Request, exc: EventValidationError) -> JSONResponse:
    return _error_json(
        request,
        status_code=422,
        code=_EVENT_REASON_CODES.get(exc.reason, "EVENT_INVALID"),
        message=str(exc),
        details={"reason": exc.reason},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("api_unhandled_error path=%s", request.url.path)
    return _error_json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(EventValidationError, event_validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
