# common/errors.py

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """
    Base class for the errors a domain operation may raise.

    Every subclass maps to one HTTP status. ``extra`` is merged into the
    JSON envelope produced by the boundary handler.
    """

    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(ServiceError):
    status_code = 400


class StockError(ValidationError):
    """Raised when the product service reports specific items out of stock."""

    def __init__(self, out_of_stock_items: list):
        super().__init__("Some items are out of stock", outOfStockItems=out_of_stock_items)
        self.out_of_stock_items = out_of_stock_items


class NotFoundError(ServiceError):
    status_code = 404


class ForbiddenError(ServiceError):
    status_code = 403


class ConflictError(ServiceError):
    status_code = 409


class UpstreamError(ServiceError):
    """A collaborator was unreachable or answered with an error."""

    def __init__(self, message: str, status_code: int | None = None, **extra):
        super().__init__(message, **extra)
        self.status_code = status_code or 500


class InternalError(ServiceError):
    status_code = 500


def error_body(exc: Exception, message: str, environment: str, extra: dict | None = None) -> dict:
    body = {"message": message}
    if extra:
        body.update(extra)
    if environment != "production":
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


def install_error_handlers(app: FastAPI, environment: str) -> None:
    """
    Registers the boundary translators that turn domain errors into the
    ``{message, stack?}`` JSON envelope.
    """

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(error_body(exc, exc.message, environment, exc.extra)),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder(
                error_body(exc, "Invalid request data", environment, {"errors": exc.errors()})
            ),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = "Internal server error"
        if environment != "production":
            message = str(exc) or message
        return JSONResponse(
            status_code=InternalError.status_code,
            content=jsonable_encoder(error_body(exc, message, environment)),
        )
