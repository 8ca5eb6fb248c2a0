import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class InvalidConditionError(ValidationError):
    pass


class VariantNotFoundError(ValidationError):
    pass


class ConditionNotFoundError(ValidationError):
    pass


class ColorUnavailableError(ValidationError):
    pass


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 400


class InsufficientStockError(ConflictError):
    pass


class AuthorizationError(StoreError):
    status_code = 403


class PaymentGatewayError(StoreError):
    status_code = 502


class WebhookSignatureError(StoreError):
    status_code = 400


async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})
