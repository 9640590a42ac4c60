"""
Error taxonomy for the relay and its FastAPI exception handler.

Intake errors are raised synchronously to the caller. Transport, device
and correlation problems are recorded on the Delivery Record or logged,
never pushed back to the original caller.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base exception for the SMS relay."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Any] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ValidationError(RelayError):
    """Malformed input at intake. Raised before anything is persisted."""

    def __init__(self, message: str = "Validation error", details: Optional[Any] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=422, details=details)


class BatchTooLarge(RelayError):
    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Maximum {limit} recipients allowed per bulk request, got {size}",
            code="BATCH_TOO_LARGE",
            status_code=413,
            details={"size": size, "limit": limit},
        )


class NotFound(RelayError):
    def __init__(self, message: str = "SMS not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)


class AlreadyDelivered(RelayError):
    def __init__(self, record_id: str):
        super().__init__(
            "SMS already sent",
            code="ALREADY_DELIVERED",
            status_code=409,
            details={"id": record_id},
        )


class InvalidState(RelayError):
    """Operation not allowed for the record's current status."""

    def __init__(self, record_id: str, status: str):
        super().__init__(
            f"SMS in status {status} cannot be retried",
            code="INVALID_STATE",
            status_code=409,
            details={"id": record_id, "status": status},
        )


class RetryLimitExceeded(RelayError):
    def __init__(self, record_id: str, max_retries: int):
        super().__init__(
            "Maximum retry attempts reached",
            code="RETRY_LIMIT_EXCEEDED",
            status_code=409,
            details={"id": record_id, "max_retries": max_retries},
        )


class TransportError(RelayError):
    """Publish or connect failure on the relay broker."""

    def __init__(self, message: str = "relay unavailable", details: Optional[Any] = None):
        super().__init__(message, code="TRANSPORT_ERROR", status_code=503, details=details)


class TransportFatalError(TransportError):
    """Reconnect attempts exhausted. The process must be restarted by its supervisor."""

    def __init__(self, attempts: int):
        super().__init__(
            f"Gave up reconnecting to relay broker after {attempts} attempts",
            details={"attempts": attempts},
        )
        self.code = "TRANSPORT_FATAL"


class DeviceError(RelayError):
    """The Device Agent reported a failed send."""

    def __init__(self, destination: str, reason: str):
        super().__init__(reason, code="DEVICE_ERROR", status_code=502, details={"destination": destination})


class CorrelationMiss(RelayError):
    """A status event matched no queued or pending record."""

    def __init__(self, destination: str, status: str):
        super().__init__(
            f"No pending SMS found for {destination} (status {status})",
            code="CORRELATION_MISS",
            status_code=404,
            details={"destination": destination, "status": status},
        )


class WireFormatError(RelayError):
    """Inbound frame from the Device Agent could not be parsed."""

    def __init__(self, message: str, frame: str):
        super().__init__(message, code="WIRE_FORMAT_ERROR", status_code=400, details={"frame": frame})


def add_exception_handlers(app: FastAPI) -> None:
    """Registers relay exception handlers with the FastAPI app."""

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code}: {exc.message}")
        else:
            logger.info(f"{exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, "details": exc.details},
        )
