"""Error codes and exceptions surfaced by the edge layer."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from contractnest_edge.domain.schemas import ErrorBody, ErrorEnvelope, ResponseMetadata


class ErrorCode(str, Enum):
    MISSING_TENANT = "MISSING_TENANT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    IDEMPOTENCY_KEY_REUSED = "IDEMPOTENCY_KEY_REUSED"
    CLAIM_LOST = "CLAIM_LOST"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.MISSING_TENANT: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INVALID_SIGNATURE: 403,
    ErrorCode.IDEMPOTENCY_CONFLICT: 409,
    ErrorCode.IDEMPOTENCY_KEY_REUSED: 422,
    ErrorCode.CLAIM_LOST: 409,
    ErrorCode.STORE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Whether a client may retry the same request unchanged
ERROR_RETRYABLE: Dict[ErrorCode, bool] = {
    ErrorCode.MISSING_TENANT: False,
    ErrorCode.VALIDATION_ERROR: False,
    ErrorCode.FORBIDDEN: False,
    ErrorCode.INVALID_SIGNATURE: False,
    ErrorCode.IDEMPOTENCY_CONFLICT: True,
    ErrorCode.IDEMPOTENCY_KEY_REUSED: False,
    ErrorCode.CLAIM_LOST: True,
    ErrorCode.STORE_UNAVAILABLE: True,
    ErrorCode.INTERNAL_ERROR: True,
}


class EdgeError(Exception):
    """Base error that maps onto the edge error envelope."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        self.message = message or f"Error: {self.code.value}"
        self.context = context or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_HTTP_STATUS[self.code]

    @property
    def retryable(self) -> bool:
        return ERROR_RETRYABLE[self.code]

    def to_response(self, request_id: Optional[str] = None) -> JSONResponse:
        envelope = ErrorEnvelope(
            error=ErrorBody(code=self.code.value, message=self.message, retryable=self.retryable),
            metadata=ResponseMetadata(request_id=request_id, timestamp=datetime.now(timezone.utc).isoformat()),
        )
        return JSONResponse(status_code=self.status_code, content=envelope.model_dump(mode="json"))


class MissingTenant(EdgeError):
    code = ErrorCode.MISSING_TENANT


class InvalidRequest(EdgeError):
    code = ErrorCode.VALIDATION_ERROR


class Forbidden(EdgeError):
    code = ErrorCode.FORBIDDEN


class InvalidSignature(EdgeError):
    code = ErrorCode.INVALID_SIGNATURE


class IdempotencyConflict(EdgeError):
    """A request with the same key is still in flight."""

    code = ErrorCode.IDEMPOTENCY_CONFLICT


class IdempotencyKeyReused(EdgeError):
    """The key was already used for a request with a different payload."""

    code = ErrorCode.IDEMPOTENCY_KEY_REUSED


class ClaimLost(EdgeError):
    """The caller no longer owns the pending marker it tried to transition."""

    code = ErrorCode.CLAIM_LOST


class StoreUnavailable(EdgeError):
    code = ErrorCode.STORE_UNAVAILABLE
