import logging
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"

# StoreResult.reason -> HTTP status
REASON_STATUS = {
    "invalid": 400,
    "exists": 400,
    "not_found": 404,
    "conflict": 409,
    "error": 500,
}


class ApiError(Exception):
    """An error rendered as ``{"success": false, "error": ..., "code": ...}``."""

    def __init__(self, status_code: int, error: str, code: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.code = code


def error_body(error: str, code: Optional[str] = None) -> dict:
    body = {"success": False, "error": error}
    if code:
        body["code"] = code
    return body


def raise_for_result(result, not_found_status: int = 404) -> None:
    """Translate a failed store result into an ApiError."""
    if result.success:
        return
    status = REASON_STATUS.get(result.reason or "error", 500)
    if result.reason == "not_found":
        status = not_found_status
    if status >= 500:
        raise ApiError(status, GENERIC_ERROR)
    raise ApiError(status, result.error or "Request failed")


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, exc.code))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404 and exc.detail == "Not Found":
        detail = "Endpoint not found"
    else:
        detail = str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(status_code=400, content=error_body(message))


async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception(
            "Unhandled exception",
            extra={"method": request.method, "path": request.url.path},
        )
        return JSONResponse(status_code=500, content=error_body(GENERIC_ERROR))
