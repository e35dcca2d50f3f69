from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.sandbox_errors import SandboxError


logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_response(
    data: Any = None,
    message: Optional[str] = None,
    *,
    status_code: int = 200,
    is_demo: Optional[bool] = None,
) -> JSONResponse:
    content: dict[str, Any] = {
        "success": True,
        "data": data,
        "message": message,
        "timestamp": _timestamp(),
    }
    if is_demo is not None:
        content["isDemo"] = bool(is_demo)
    return JSONResponse(status_code=status_code, content=content)


def error_response(
    message: str,
    *,
    status_code: int = 500,
    code: str = "INTERNAL_ERROR",
    details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    content: dict[str, Any] = {
        "success": False,
        "error": message,
        "errorCode": code,
        "timestamp": _timestamp(),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def _sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return error_response(exc.message, status_code=exc.status_code, code=exc.code, details=exc.details)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", ()) if loc != "body"),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    types = {str(error["type"]) for error in errors}
    if any("json" in error_type for error_type in types):
        return error_response(
            "Invalid JSON in request body",
            status_code=400,
            code="MALFORMED_JSON",
            details={"errors": errors},
        )
    missing = [error["field"] for error in errors if error["type"] == "missing"]
    if missing:
        return error_response(
            f"Missing required parameters: {', '.join(missing)}",
            status_code=400,
            code="MISSING_PARAMETER",
            details={"missingParams": missing},
        )
    return error_response("Invalid request", status_code=400, code="INVALID_INPUT", details={"errors": errors})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(
        str(exc) or "Internal server error",
        status_code=500,
        code="INTERNAL_ERROR",
        details={"type": type(exc).__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SandboxError, _sandbox_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
