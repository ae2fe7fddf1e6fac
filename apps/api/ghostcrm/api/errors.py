from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ghostcrm.context import get_correlation_id
from ghostcrm.telecom.errors import MissingFieldsError, TelecomError


logger = logging.getLogger("ghostcrm.errors")


def _correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(request.state, "correlation_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    content: dict[str, Any] = {
        "error": code,
        "message": message,
        "correlation_id": _correlation_id(request),
    }
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def telecom_error_handler(request: Request, exc: TelecomError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", extra={"path": request.url.path, "error": exc.code})
    details = exc.fields if isinstance(exc, MissingFieldsError) else None
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message, details=details)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "type": error.get("type"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return error_response(
        request,
        status_code=400,
        code=MissingFieldsError.code,
        message="request body is missing or malformed",
        details=details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TelecomError, telecom_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
