"""
Error taxonomy and the centralized error formatting shared by every service.

Every failure path, whichever middleware raised it, ends up in one of the
handlers registered by ``register_error_handlers`` and is rendered with the
standard error envelope.
"""
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hrms_services.base_microservice import BaseMicroservice

error_service = BaseMicroservice("errors")


class AppError(Exception):
    """Base class for errors that map to an HTTP status and a client-safe message."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: str = "InternalError"
    default_message: str = "Internal server error"
    headers: Optional[dict] = None

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# --- 401 ---

class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "Unauthenticated"
    default_message = "Authentication failed."
    headers = {"WWW-Authenticate": "Bearer"}


class NoCredential(AuthenticationError):
    kind = "NoCredential"
    default_message = "Access denied. No token provided."


class InvalidSignature(AuthenticationError):
    kind = "InvalidSignature"
    default_message = "Invalid token."


class Malformed(AuthenticationError):
    kind = "Malformed"
    default_message = "Invalid token."


class Expired(AuthenticationError):
    kind = "Expired"
    default_message = "Token expired."


class UnknownSubject(AuthenticationError):
    kind = "UnknownSubject"
    default_message = "Invalid token. User not found."


class InvalidCredentials(AuthenticationError):
    kind = "InvalidCredentials"
    default_message = "Invalid email or password"


class PendingApproval(AuthenticationError):
    kind = "PendingApproval"
    default_message = "Account pending approval by admin"


class Deactivated(AuthenticationError):
    kind = "Deactivated"
    default_message = "Account is deactivated."


# --- 403 ---

class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "Forbidden"
    default_message = "Access denied."


class InsufficientRole(AuthorizationError):
    kind = "InsufficientRole"
    default_message = "Access denied. Insufficient permissions."


class NotOwner(AuthorizationError):
    kind = "NotOwner"
    default_message = "Access denied. You can only access your own data."


# --- 4xx ---

class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "NotFound"
    default_message = "Resource not found"


class RouteNotFound(NotFound):
    kind = "RouteNotFound"
    default_message = "Route not found"


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "ValidationError"
    default_message = "Validation Error"


class Conflict(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "Conflict"
    default_message = "Request conflicts with the current state"


# --- 5xx ---

class UpstreamUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    kind = "UpstreamUnavailable"
    default_message = "Service temporarily unavailable"


class UpstreamError(UpstreamUnavailable):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Bad gateway"


class AuditWriteFailure(Exception):
    """Raised inside the audit writer only; never reaches a client."""


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "Validation Error: " + ", ".join(parts)


def register_error_handlers(app: FastAPI, service: BaseMicroservice = error_service) -> None:
    """Install the exception handlers that render every failure as the error envelope."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        service.logger.info(
            f"{request.method} {request.url.path} rejected: {exc.kind} ({exc.status_code})"
        )
        response = service.error_response(exc.message, exc.status_code, kind=exc.kind)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return service.error_response(
            _validation_message(exc),
            status.HTTP_400_BAD_REQUEST,
            kind=ValidationFailed.kind,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        kind = RouteNotFound.kind if exc.status_code == status.HTTP_404_NOT_FOUND else None
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
            message = RouteNotFound.default_message
        response = service.error_response(message, exc.status_code, kind=kind)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        service.log_error(exc, context=f"{request.method} {request.url.path}")
        return service.error_response(
            AppError.default_message,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
