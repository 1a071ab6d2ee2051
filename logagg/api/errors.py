from __future__ import annotations

from typing import Any, Dict, Optional


class LogAggError(Exception):
    """Base class for errors raised by the core; `code` is the machine-readable kind."""

    code = "internal_error"
    status_code = 500

    def __init__(self, detail: str = "", meta: Optional[Dict[str, Any]] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.meta: Dict[str, Any] = dict(meta or {})


# ---- Ingestion (always local to one message) ----


class IngestionError(LogAggError):
    """A broker message could not be normalized into a LogRecord."""

    code = "ingestion_error"
    status_code = 400


class MalformedPayload(IngestionError):
    code = "malformed_payload"


class InvalidHostFormat(IngestionError):
    code = "invalid_host_format"


class InvalidProcessesFormat(IngestionError):
    code = "invalid_processes_format"


# ---- Authority ----


class Unauthorized(LogAggError):
    """Missing or unusable credential."""

    code = "unauthorized"
    status_code = 401


class KeyNotFound(Unauthorized):
    code = "key_not_found"


class KeyRevoked(Unauthorized):
    code = "key_revoked"


class KeyExpired(Unauthorized):
    code = "key_expired"


class Forbidden(LogAggError):
    """Valid credential of the wrong key type for the endpoint."""

    code = "forbidden"
    status_code = 403


# ---- Query path ----


class NotFound(LogAggError):
    code = "not_found"
    status_code = 404


class InvalidInput(LogAggError):
    code = "invalid_input"
    status_code = 400


class RateLimited(LogAggError):
    code = "rate_limited"
    status_code = 429


class RepositoryError(LogAggError):
    """Storage failure, wrapped with the operation that was running."""

    code = "repository_error"
    status_code = 500

    def __init__(self, operation: str, detail: str = ""):
        super().__init__(detail or f"repository operation failed: {operation}", meta={"operation": operation})
        self.operation = operation
