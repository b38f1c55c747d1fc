"""
Domain exceptions and the FastAPI handlers that render them.

Every error leaves the service as ``{"error": ..., "statusCode": ...}``.
Validation failures (ours and FastAPI's own request validation) are 400s and
carry a ``details`` list. Unexpected exceptions become a generic 500 and are
logged server-side with their traceback.
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class UserServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestValidationFailed(UserServiceError):
    status_code = 400

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotFoundError(UserServiceError):
    status_code = 404


class ConflictError(UserServiceError):
    status_code = 409


class ParticipantNotFound(NotFoundError):
    """A follow referenced a user id with no profile row."""


class RelationshipNotFound(NotFoundError):
    """An unfollow referenced an edge that does not exist."""


def _payload(message: str, status_code: int) -> dict:
    return {"error": message, "statusCode": status_code}


def _format_validation_error(err: dict) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    return f"{location}: {err.get('msg')}" if location else str(err.get("msg"))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UserServiceError)
    async def user_service_error_handler(request: Request, exc: UserServiceError):
        content = _payload(exc.message, exc.status_code)
        if isinstance(exc, RequestValidationFailed) and exc.details:
            content["details"] = exc.details
        logger.info(
            "%s %s → %d (%s)", request.method, request.url.path, exc.status_code, exc.message
        )
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [_format_validation_error(err) for err in exc.errors()]
        logger.info("%s %s → 400 %s", request.method, request.url.path, details)
        return JSONResponse(
            status_code=400,
            content={**_payload("Validation failed", 400), "details": details},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_payload(str(exc.detail), exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_payload("Internal server error", 500))
