from __future__ import annotations
from typing import Any, Dict
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.responses import JSONResponse
from core_logging import get_logger, log_stage, current_request_id
from core_utils.ids import generate_request_id
from core_utils import jsonx
from core_logging.error_codes import ErrorCode  # reuse codes; do not duplicate
from fastapi import HTTPException as FastAPIHTTPException

def error_payload(
    code: ErrorCode | str,
    message: str,
    request_id: str,
    *,
    details: object | None = None,
) -> Dict[str, Any]:
    """The canonical error envelope shared by every non-2xx edge response."""
    payload: Dict[str, Any] = {
        "error": {
            "code": str(getattr(code, "value", code)),
            "message": message,
            "request_id": request_id,
        },
        "request_id": request_id,
    }
    if details is not None:
        payload["error"]["details"] = jsonx.sanitize(details)
    return payload

def raise_http_error(
    status_code: int,
    code: ErrorCode,
    message: str,
    request_id: str,
    *,
    details: object | None = None,
) -> FastAPIHTTPException:
    """
    Construct a FastAPI HTTPException with the canonical error envelope.
    attach_standard_error_handlers() will pass this JSON through unchanged.
    """
    return FastAPIHTTPException(
        status_code=status_code,
        detail=error_payload(code, message, request_id, details=details),
    )

def _request_id() -> str:
    return current_request_id() or generate_request_id()

def attach_standard_error_handlers(app: FastAPI, *, service: str) -> None:
    """
    Uniform error shaping across services:
      - 422: Pydantic validation
      - Starlette HTTP errors (envelope passthrough, plain details wrapped)
      - 500: Catch-all with {code, message, details, request_id}
    """
    logger = get_logger(service)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc_handler(request: Request, exc: RequestValidationError):
        req_id = _request_id()
        log_stage(logger, "validation", "failed",
                  request_id=req_id, errors=jsonx.sanitize(exc.errors()),
                  path=request.url.path, method=request.method, level="WARNING")
        return JSONResponse(
            status_code=422,
            content=error_payload(
                ErrorCode.validation_failed,
                "Request validation failed",
                req_id,
                details={"errors": exc.errors()},
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc_handler(_: Request, exc: StarletteHTTPException):
        detail = exc.detail
        headers = getattr(exc, "headers", None)
        if isinstance(detail, dict) and "error" in detail:
            return JSONResponse(status_code=exc.status_code, content=detail, headers=headers)
        # Router-level 404/405 and bare HTTPExceptions get the same envelope
        code = ErrorCode.validation_failed if exc.status_code < 500 else ErrorCode.internal
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(code, str(detail), _request_id()),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def _unhandled_exc_handler(request: Request, exc: Exception):
        req_id = _request_id()
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            stage="request",
            request_id=req_id,
            path=request.url.path,
            method=request.method,
            error_type=exc.__class__.__name__,
        )
        return JSONResponse(
            status_code=500,
            content=error_payload(
                ErrorCode.internal,
                "Unexpected error",
                req_id,
                details={"type": exc.__class__.__name__, "message": str(exc)},
            ),
        )

__all__ = ["error_payload", "raise_http_error", "attach_standard_error_handlers"]
