# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions + FastAPI Exception Handlers
# ─────────────────────────────────────────────────────────────────────────────


import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


# ── Exception hierarchy ──────────────────────────────────────────────────────


class WorldGenError(Exception):
    """Base exception for all world generation errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ── Control surface rejections (raised before a job exists) ─────────────────


class InvalidRequestError(WorldGenError):
    """Raised when the start request is missing or has malformed fields."""

    def __init__(self, reason: str):
        super().__init__(reason, status_code=400)


class UnauthenticatedError(WorldGenError):
    """Raised when no caller identity could be resolved."""

    def __init__(self):
        super().__init__("Authentication required", status_code=401)


class InsufficientCreditsError(WorldGenError):
    """Raised when the ledger refuses a debit."""

    def __init__(self, owner_id: str, required: int, balance: int | None = None):
        self.owner_id = owner_id
        self.required = required
        self.balance = balance
        super().__init__(
            f"Insufficient credits: {required} required",
            status_code=402,
        )


class RateLimitedError(WorldGenError):
    """Raised when the per-identity generation window is full."""

    def __init__(self, limit: int, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f"Generation limit of {limit} per window reached. "
            f"Retry after {retry_after}s.",
            status_code=429,
        )


class LedgerUnavailableError(WorldGenError):
    """Raised when the credit ledger cannot be reached or answers garbage."""

    def __init__(self, reason: str):
        super().__init__(f"Credit ledger unavailable: {reason}", status_code=503)


class JobNotFoundError(WorldGenError):
    """Raised when a job id is not in the job store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found", status_code=404)


# ── Pipeline failures (surface through job status, never synchronously) ─────


class ExternalServiceError(WorldGenError):
    """Non-2xx status or malformed body from an external service."""

    def __init__(self, service: str, reason: str):
        self.service = service
        super().__init__(f"{service}: {reason}", status_code=502)


class OperationFailedError(ExternalServiceError):
    """The long-running operation finished with an error field."""

    def __init__(self, operation_id: str, error: object):
        self.operation_id = operation_id
        super().__init__("world service", f"operation {operation_id} failed: {error}")


class OperationTimeoutError(WorldGenError):
    """The operation was still running after the bounded poll attempts."""

    def __init__(self, operation_id: str, timeout_s: float):
        self.operation_id = operation_id
        super().__init__(
            f"Operation timeout: {operation_id} not done after {timeout_s:.0f}s",
            status_code=504,
        )


class AssetsNotReadyError(WorldGenError):
    """The world resource never exposed its asset fields within the retries."""

    def __init__(self, world_id: str, attempts: int):
        self.world_id = world_id
        super().__init__(
            f"Timeout waiting for assets of world {world_id} after {attempts} attempts",
            status_code=504,
        )


class NoUsableAssetError(WorldGenError):
    """The world was produced but no candidate path held a usable asset."""

    def __init__(self, world_id: str, asset: str = "primary asset"):
        self.world_id = world_id
        super().__init__(
            f"World {world_id} produced but no usable {asset} found",
            status_code=502,
        )


class NoImageAvailableError(WorldGenError):
    """No caller image and image synthesis produced nothing."""

    def __init__(self):
        super().__init__("No image available for world generation", status_code=500)


class JobCancelledError(Exception):
    """Raised inside a pipeline task when its cancellation token is set."""


# ── Handler registration ────────────────────────────────────────────────────


def register_exception_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI app.

    Endpoints raise WorldGenError subclasses; these handlers catch them
    and return structured JSON, no inline try/except in endpoints.
    """

    @app.exception_handler(WorldGenError)
    async def worldgen_error_handler(request: Request, exc: WorldGenError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("worldgen_error", error=exc.message, error_type=type(exc).__name__, exc_info=exc)
        else:
            logger.info("request_rejected", error=exc.message, error_type=type(exc).__name__)
        content = {"error": exc.message, "type": type(exc).__name__}
        headers = None
        if isinstance(exc, RateLimitedError):
            content["retryAfter"] = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_error", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "type": "UnhandledError"},
        )
