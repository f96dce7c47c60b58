"""Error taxonomy and FastAPI exception handlers."""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

logger = logging.getLogger(__name__)


class X2AError(Exception):
    """Base error for everything the service reports to its callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    @property
    def name(self) -> str:
        return type(self).__name__


class InputError(X2AError):
    """Malformed request, missing field or contradictory credentials (400)."""
    status_code = 400


class ConfigurationError(InputError):
    """Required configuration or credentials are missing (400)."""


class AuthenticationError(X2AError):
    """Caller identity could not be established (401)."""
    status_code = 401


class NotAllowedError(X2AError):
    """Caller is authenticated but not permitted (403)."""
    status_code = 403


class NotFoundError(X2AError):
    """Entity absent or not visible to the caller (404)."""
    status_code = 404


class ConflictError(X2AError):
    """A job is already active for the module or project (409)."""

    status_code = 409

    def __init__(
        self,
        message: str,
        active_job_id: Optional[str] = None,
        active_job_phase: Optional[str] = None,
        details: str = "Please wait for the current job to complete or cancel it",
    ) -> None:
        super().__init__(message)
        self.active_job_id = active_job_id
        self.active_job_phase = active_job_phase
        self.details = details


def register_exception_handlers(app: FastAPI) -> None:
    """Register the error renderers on a FastAPI app."""

    @app.exception_handler(ConflictError)
    async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "JobAlreadyRunning",
                "message": exc.message,
                "details": exc.details,
                "activeJobId": exc.active_job_id,
                "activeJobPhase": exc.active_job_phase,
            },
        )

    @app.exception_handler(X2AError)
    async def x2a_error_handler(request: Request, exc: X2AError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"name": exc.name, "message": exc.message}},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = ", ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": {"name": "InputError", "message": f"Invalid request: {messages}"}},
        )
