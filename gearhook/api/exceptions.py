"""
FastAPI exception handlers - render WebhookError subclasses and request
validation failures as {success, error_code, message, details}.

Usage:
    from gearhook.api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY

from gearhook.errors import ValidationFailed, WebhookError

logger = logging.getLogger(__name__)


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message,
            extra={"error_code": exc.error_code},
        )
    else:
        logger.info(
            "%s %s rejected (%s): %s", request.method, request.url.path, exc.error_code, exc.message,
            extra={"error_code": exc.error_code},
        )
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed request fields. Never defaulted silently."""
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    fields = ", ".join(e["field"] for e in errors if e["field"]) or "request"
    body = {
        "success": False,
        "error_code": ValidationFailed.error_code,
        "message": f"Invalid or missing fields: {fields}",
        "details": {"errors": errors},
    }
    return JSONResponse(status_code=HTTP_422_UNPROCESSABLE_ENTITY, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WebhookError, webhook_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
