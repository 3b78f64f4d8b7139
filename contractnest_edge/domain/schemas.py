from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, validator


# =========================
# Request context (extracted from edge headers)
# =========================
class EdgeContext(BaseModel):
    """
    Per-request context extracted from the inbound headers.
    Request scoped; nothing here outlives the invocation.
    """

    operation_id: str = Field(..., description="Generated id for this invocation (request_id in responses)")
    start_time: float = Field(..., description="Epoch seconds when handling started")
    tenant_id: str = Field(..., description="Tenant discriminator from x-tenant-id")
    product_code: str = Field("contractnest", description="Product discriminator from x-product")
    is_admin: bool = Field(False, description="x-is-admin == 'true'")
    is_live: bool = Field(True, description="x-environment == 'live' (default)")
    idempotency_key: Optional[str] = Field(
        None,
        description="Client supplied key from x-idempotency-key or Idempotency-Key",
    )
    user_id: Optional[str] = Field(None, description="Acting user from x-user-id, if forwarded")


# =========================
# Contracts
# =========================
class CreateContractRequest(BaseModel):
    title: str = Field(..., description="Contract title")
    counterparty: Optional[str] = Field(None, description="Buyer/vendor display name")
    contract_type: str = Field("service", description="service | product | amc | other")
    value: Optional[float] = Field(None, description="Total contract value")
    currency: str = Field("INR", description="ISO currency code")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @validator("title")
    def title_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        if len(v) > 200:
            raise ValueError("title must be <= 200 characters")
        return v

    @validator("value")
    def value_not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("value must be >= 0")
        return v

    @validator("end_date")
    def end_after_start(cls, v: Optional[date], values: Dict[str, Any]) -> Optional[date]:
        start = values.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("end_date must not be before start_date")
        return v


class Contract(BaseModel):
    contract_id: str
    tenant_id: str
    product_code: str
    title: str
    counterparty: Optional[str] = None
    contract_type: str
    value: Optional[float] = None
    currency: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: str = Field("draft", description="Lifecycle status; creation always yields draft")
    created_by: Optional[str] = None
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =========================
# Pagination + envelopes
# =========================
class PaginationParams(BaseModel):
    page: int
    limit: int
    offset: int


class ResponseMetadata(BaseModel):
    request_id: Optional[str] = None
    duration_ms: Optional[int] = None
    timestamp: str


class SuccessEnvelope(BaseModel):
    success: bool = True
    data: Any
    metadata: ResponseMetadata


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool = False


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody
    metadata: ResponseMetadata
