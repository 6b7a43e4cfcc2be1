import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    code = "Error"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(AppException):
    code = "NotFound"

    def __init__(self, message: str = "Not found", status_code: int = 404):
        super().__init__(message, status_code=status_code)


class SessionNotFound(NotFoundError):
    def __init__(self, message: str = "Session not found"):
        super().__init__(message)


class ReservationNotFound(NotFoundError):
    code = "ReservationNotFound"

    def __init__(self, message: str = "Reservation not found"):
        super().__init__(message)


class InvalidInputError(AppException):
    code = "InvalidInput"

    def __init__(self, message: str = "Missing params", status_code: int = 400):
        super().__init__(message, status_code=status_code)


class InvalidImage(InvalidInputError):
    code = "InvalidImage"


class DocumentMissing(InvalidInputError):
    code = "DocumentMissing"


class ConflictError(AppException):
    code = "Conflict"

    def __init__(self, message: str = "Session was updated concurrently, please retry"):
        super().__init__(message, status_code=409)


class ProviderError(AppException):
    code = "ProviderError"

    def __init__(self, message: str = "Upstream provider failed", status_code: int = 502):
        super().__init__(message, status_code=status_code)


class UpstreamError(ProviderError):
    def __init__(self, message: str, http_status: int | None = None, not_found: bool = False):
        self.http_status = http_status
        self.not_found = not_found
        super().__init__(message)


class UpstreamUnauthorized(UpstreamError):
    def __init__(self, message: str = "Upstream rejected the access token"):
        super().__init__(message, http_status=401)


class BlobNotFound(NotFoundError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found: {key}")


class RefreshFailed(ProviderError):
    code = "RefreshFailed"

    def __init__(self, message: str = "Failed to refresh Cloudbeds token"):
        super().__init__(message)


class CredentialUnavailable(AppException):
    code = "Unavailable"

    def __init__(self, message: str = "No Cloudbeds token found. Please authorize the property first."):
        super().__init__(message, status_code=503)


class UnconfiguredError(AppException):
    code = "Unconfigured"

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def _app_exception_handler(_: Request, exc: AppException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request body", "code": InvalidInputError.code},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Server error", "code": "ServerError"},
        )
