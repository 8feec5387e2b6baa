import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.calendar.errors import (
    EventConflict,
    EventNotFound,
    EventValidationError,
    ExternalUnavailable,
    GoogleAPIError,
)

logger = logging.getLogger(__name__)


SAFE_ERROR_MESSAGES = {
    400: "Invalid request",
    401: "Authentication required",
    403: "Access denied",
    404: "Resource not found",
    409: "Event was modified by another request",
    429: "Too many requests, please try again later",
    500: "An internal error occurred",
    502: "Service temporarily unavailable",
    503: "Service temporarily unavailable",
    504: "Request timed out",
}


def get_safe_message(status_code: int, fallback: str = "An error occurred") -> str:
    return SAFE_ERROR_MESSAGES.get(status_code, fallback)


async def handle_validation_error(request: Request, exc: EventValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


async def handle_not_found(request: Request, exc: EventNotFound):
    return JSONResponse(status_code=404, content={"detail": "Event not found"})


async def handle_conflict(request: Request, exc: EventConflict):
    logger.info("Conflict on event %s: %s", exc.event_id, exc.message)
    return JSONResponse(status_code=409, content={"detail": exc.message})


async def handle_google_api_error(request: Request, exc: GoogleAPIError):
    logger.error(
        "Google API error during %s %s: status=%d, message=%s",
        request.method, request.url.path, exc.status_code, exc.message
    )
    if isinstance(exc, ExternalUnavailable) or exc.status_code >= 500:
        return JSONResponse(status_code=502, content={"detail": get_safe_message(502)})
    return JSONResponse(status_code=502, content={"detail": "Google Calendar rejected the request"})


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled exception during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": get_safe_message(500)})


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(EventValidationError, handle_validation_error)
    app.add_exception_handler(EventNotFound, handle_not_found)
    app.add_exception_handler(EventConflict, handle_conflict)
    app.add_exception_handler(GoogleAPIError, handle_google_api_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
