"""Error taxonomy for the voice relay and its FastAPI handlers."""
from __future__ import annotations

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base error carrying the HTTP status and websocket close code to surface."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    close_code: int = 4400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content={"error": self.message})


class InvalidRequest(RelayError):
    """The inbound request is not a websocket upgrade."""


class MissingCoachReference(RelayError):
    """No ``coachId`` query parameter was supplied."""


class CoachNotFound(RelayError):
    status_code = status.HTTP_404_NOT_FOUND
    close_code = 4404


class UpstreamUnavailable(RelayError):
    """The voice vendor could not hand out a connection."""

    status_code = status.HTTP_502_BAD_GATEWAY
    close_code = 1011


class AuthenticationRequired(RelayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    close_code = 4401


class UpstreamConnectionError(RelayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    close_code = 1011


class UpstreamConnectionClosed(RelayError):
    """The upstream side went away; ``code``/``reason`` mirror its close frame."""

    status_code = status.HTTP_502_BAD_GATEWAY
    close_code = 1000

    def __init__(self, message: str, *, code: int | None = None, reason: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason


class ActivityFlushFailure(RelayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    close_code = 1011


async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(f"Relay error on {request.url.path}: {exc.message}")
    return exc.to_response()


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}: {exc!r}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An unexpected error occurred"},
    )
