import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from contractnest_edge.core.auth import require_ops_api_key
from contractnest_edge.core.config_loader import EdgePolicy, load_edge_policy
from contractnest_edge.core.errors import (
    EdgeError,
    Forbidden,
    InvalidRequest,
    InvalidSignature,
    MissingTenant,
    StoreUnavailable,
)
from contractnest_edge.core.failure_sink import get_failure_sink, make_failure
from contractnest_edge.core.fingerprint import fingerprint_request
from contractnest_edge.core.idempotency_store import StoredResponse, get_idempotency_store
from contractnest_edge.core.logging import get_logger, log_event
from contractnest_edge.core.pagination import paginate, paginated_response, parse_pagination_params
from contractnest_edge.core.response_cache import get_response_cache, read_through
from contractnest_edge.core.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature
from contractnest_edge.domain.schemas import (
    CreateContractRequest,
    EdgeContext,
    ResponseMetadata,
    SuccessEnvelope,
)
from contractnest_edge.services.contracts import create_contract, list_contracts
from contractnest_edge.services.idempotency import run_idempotent

CORS_ALLOWED_HEADERS = [
    "authorization",
    "x-client-info",
    "apikey",
    "content-type",
    "x-tenant-id",
    "x-product",
    "x-internal-signature",
    "x-timestamp",
    "x-is-admin",
    "x-environment",
    "x-idempotency-key",
    "idempotency-key",
    "x-user-id",
]

app = FastAPI(title="ContractNest Edge")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=CORS_ALLOWED_HEADERS,
    expose_headers=["Idempotency-Replayed", "X-Idempotency-Key", "X-Cache"],
)
logger = get_logger()

# Operator-visible failure sink (file by default)
failure_sink = get_failure_sink()

# Idempotency store backend is selectable (sqlite for local, firestore for shared)
idem_store = get_idempotency_store()

# Response cache backend is selectable (sqlite for local, redis for shared)
response_cache = get_response_cache()


def _startup_validate_configs() -> EdgePolicy:
    """
    Load the edge policy. Invalid config must abort startup, never degrade.
    """
    policy = load_edge_policy()
    log_event(
        logger,
        event_name="edge_policy_loaded",
        fields={"version": policy.version, "operations": [op.operation_id for op in policy.operations]},
    )
    return policy


edge_policy = _startup_validate_configs()


def _replay_protection_enabled() -> bool:
    v = os.getenv("SIGNATURE_REPLAY_PROTECTION", "true").strip().lower()
    return v in {"1", "true", "yes", "on"}


def generate_operation_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def extract_request_context(
    headers: Mapping[str, str],
    operation_id: str,
    start_time: float,
) -> EdgeContext:
    """
    Build the request context from edge headers.
    x-tenant-id is mandatory; everything else has a default.
    """
    tenant_id = (headers.get("x-tenant-id") or "").strip()
    if not tenant_id:
        log_event(
            logger,
            event_name="request_rejected",
            fields={"reason": "missing_tenant", "operation_id": operation_id},
        )
        failure_sink.notify(
            make_failure(
                stage="context",
                error_code="MISSING_TENANT",
                message="x-tenant-id header is required",
                context={"operation_id": operation_id},
            )
        )
        raise MissingTenant("x-tenant-id header is required")

    idempotency_key = headers.get("x-idempotency-key") or headers.get("idempotency-key")

    return EdgeContext(
        operation_id=operation_id,
        start_time=start_time,
        tenant_id=tenant_id,
        product_code=(headers.get("x-product") or "contractnest").strip(),
        is_admin=(headers.get("x-is-admin") or "").lower() == "true",
        is_live=(headers.get("x-environment") or "live").lower() == "live",
        idempotency_key=idempotency_key.strip() if idempotency_key else None,
        user_id=headers.get("x-user-id"),
    )


def _verify_internal_signature(headers: Mapping[str, str], raw_body: str, ctx: EdgeContext) -> None:
    """
    Only requests signed by the API layer are served. Disabled when
    EDGE_SIGNING_SECRET is unset (local development).
    """
    secret = os.getenv("EDGE_SIGNING_SECRET")
    if not secret:
        return

    signature = headers.get(SIGNATURE_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    if not signature or not timestamp:
        log_event(
            logger,
            event_name="signature_rejected",
            fields={"reason": "missing_headers", "operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id},
        )
        raise Forbidden(
            "Direct access to edge functions is not allowed. Requests must come through the API layer."
        )

    guard = response_cache if _replay_protection_enabled() else None
    check = verify_signature(raw_body, signature, timestamp, secret, replay_guard=guard)
    if not check.is_valid:
        log_event(
            logger,
            event_name="signature_rejected",
            fields={"reason": check.error, "operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id},
        )
        failure_sink.notify(
            make_failure(
                stage="signature",
                error_code="INVALID_SIGNATURE",
                message=check.error or "Invalid internal signature",
                context={"operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id},
            )
        )
        raise InvalidSignature(check.error or "Invalid internal signature")


def _response_metadata(ctx: EdgeContext) -> ResponseMetadata:
    return ResponseMetadata(
        request_id=ctx.operation_id,
        duration_ms=int((time.time() - ctx.start_time) * 1000),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def _success_payload(data: Any, ctx: EdgeContext) -> Dict[str, Any]:
    return SuccessEnvelope(data=data, metadata=_response_metadata(ctx)).model_dump(mode="json")


def _parse_create_request(raw_body: str) -> tuple[Dict[str, Any], CreateContractRequest]:
    try:
        body = json.loads(raw_body or "{}")
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"Request body is not valid JSON: {e.msg}") from e
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    try:
        return body, CreateContractRequest.model_validate(body)
    except ValidationError as e:
        fields = {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()}
        raise InvalidRequest(f"Invalid contract request: {fields}") from e


def _notify_store_unavailable(ctx: EdgeContext, error: StoreUnavailable, key: Optional[str]) -> None:
    log_event(
        logger,
        event_name="store_unavailable",
        fields={"operation_id": ctx.operation_id, "idempotency_key": key, "error": error.message},
    )
    failure_sink.notify(
        make_failure(
            stage="idempotency",
            error_code="STORE_UNAVAILABLE",
            message=error.message,
            context={"operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id, "idempotency_key": key},
        )
    )


def _process_create_contract(ctx: EdgeContext, headers: Mapping[str, str], raw_body: str) -> JSONResponse:
    """
    Create-contract pipeline:
      - internal signature
      - body validation
      - fingerprint + idempotency claim (replay / proceed / conflict)
      - create contract (side effect) exactly once per key epoch
      - structured logging + failure sink
    """
    _verify_internal_signature(headers, raw_body, ctx)
    body, create_req = _parse_create_request(raw_body)

    def _handler() -> StoredResponse:
        contract = create_contract(ctx, create_req)
        log_event(
            logger,
            event_name="contract_created",
            fields={
                "contract_id": contract.contract_id,
                "tenant_id": ctx.tenant_id,
                "product_code": ctx.product_code,
                "operation_id": ctx.operation_id,
            },
        )
        return StoredResponse(
            status_code=201,
            payload=_success_payload(contract.model_dump(mode="json"), ctx),
        )

    op = edge_policy.find("POST", "/contracts")
    if op is None or not op.idempotent:
        response = _handler()
        return JSONResponse(status_code=response.status_code, content=response.payload)

    fingerprint = fingerprint_request(
        tenant_id=ctx.tenant_id,
        operation_id=op.operation_id,
        method="POST",
        path="/contracts",
        product_code=ctx.product_code,
        body=body,
        client_key=ctx.idempotency_key,
    )
    key = fingerprint.key.value

    try:
        outcome = run_idempotent(
            idem_store,
            fingerprint,
            _handler,
            ttl_seconds=edge_policy.idempotency_ttl(op),
            lease_seconds=edge_policy.pending_lease(op),
            wait_timeout_seconds=edge_policy.conflict_wait(op),
        )
    except StoreUnavailable as e:
        _notify_store_unavailable(ctx, e, key)
        raise
    except EdgeError:
        raise
    except Exception as e:
        failure_sink.notify(
            make_failure(
                stage="handler",
                error_code="CREATE_CONTRACT_FAILED",
                message=str(e),
                context={"operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id, "idempotency_key": key},
            )
        )
        raise

    return JSONResponse(
        status_code=outcome.response.status_code,
        content=outcome.response.payload,
        headers={
            "Idempotency-Replayed": "true" if outcome.replayed else "false",
            "X-Idempotency-Key": key,
        },
    )


def _process_list_contracts(
    ctx: EdgeContext,
    headers: Mapping[str, str],
    page: Optional[str],
    limit: Optional[str],
) -> JSONResponse:
    _verify_internal_signature(headers, "", ctx)
    pagination = parse_pagination_params(page, limit)

    def _compute() -> Dict[str, Any]:
        contracts = list_contracts(ctx.tenant_id, ctx.product_code)
        items = [c.model_dump(mode="json") for c in paginate(contracts, pagination)]
        return paginated_response(items, pagination, total=len(contracts))

    op = edge_policy.find("GET", "/contracts")
    if op is None or not op.cacheable:
        return JSONResponse(status_code=200, content=_success_payload(_compute(), ctx))

    page_part = f"{pagination.page}:{pagination.limit}" if pagination else "all"
    cache_key = f"{ctx.tenant_id}:{op.operation_id}:{ctx.product_code}:{page_part}"

    try:
        data, hit = read_through(response_cache, cache_key, edge_policy.cache_ttl(op), _compute)
    except StoreUnavailable as e:
        # The cache is optional; reads fall back to computing directly
        log_event(
            logger,
            event_name="cache_unavailable",
            fields={"cache_key": cache_key, "operation_id": ctx.operation_id, "error": e.message},
        )
        failure_sink.notify(
            make_failure(
                stage="cache",
                error_code="STORE_UNAVAILABLE",
                message=e.message,
                context={"cache_key": cache_key, "operation_id": ctx.operation_id},
            )
        )
        return JSONResponse(status_code=200, content=_success_payload(_compute(), ctx), headers={"X-Cache": "BYPASS"})

    log_event(
        logger,
        event_name="cache_hit" if hit else "cache_miss",
        fields={"cache_key": cache_key, "operation_id": ctx.operation_id, "tenant_id": ctx.tenant_id},
    )
    return JSONResponse(
        status_code=200,
        content=_success_payload(data, ctx),
        headers={"X-Cache": "HIT" if hit else "MISS"},
    )


@app.exception_handler(EdgeError)
async def edge_error_handler(request: Request, exc: EdgeError) -> JSONResponse:
    return exc.to_response(request_id=getattr(request.state, "operation_id", None))


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/contracts")
async def create_contract_endpoint(request: Request) -> JSONResponse:
    """
    Create a draft contract.
    Headers: x-tenant-id (required), x-product, x-idempotency-key / Idempotency-Key.
    A retry within the TTL replays the original status code and body.
    """
    operation_id = generate_operation_id("create_contract")
    request.state.operation_id = operation_id
    ctx = extract_request_context(request.headers, operation_id, time.time())
    try:
        raw_body = (await request.body()).decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidRequest("Request body is not valid UTF-8") from e
    return await run_in_threadpool(_process_create_contract, ctx, request.headers, raw_body)


@app.get("/contracts")
async def list_contracts_endpoint(
    request: Request,
    page: Optional[str] = None,
    limit: Optional[str] = None,
) -> JSONResponse:
    """
    List the tenant's contracts through the read-through cache.
    """
    operation_id = generate_operation_id("list_contracts")
    request.state.operation_id = operation_id
    ctx = extract_request_context(request.headers, operation_id, time.time())
    return await run_in_threadpool(_process_list_contracts, ctx, request.headers, page, limit)


@app.get("/ops/idempotency/{key:path}")
def inspect_idempotency_record(key: str, _: None = Depends(require_ops_api_key)):
    record = idem_store.get(key)
    if record is None:
        return {"key": key, "status": "absent"}
    return {
        "key": record.key,
        "status": record.status,
        "owner_id": record.owner_id,
        "status_code": record.response.status_code if record.response else None,
        "created_at": record.created_at,
        "lease_until": record.lease_until,
        "expires_at": record.expires_at,
    }


@app.delete("/ops/idempotency/{key:path}")
def evict_idempotency_record(key: str, _: None = Depends(require_ops_api_key)):
    """
    Explicit eviction. Requires header: X-API-Key: <OPS_API_KEY>
    """
    evicted = idem_store.evict(key)
    log_event(logger, event_name="record_evicted", fields={"idempotency_key": key, "evicted": evicted})
    return {"status": "ok", "evicted": evicted}


@app.post("/ops/idempotency/purge")
def purge_idempotency_records(_: None = Depends(require_ops_api_key)):
    """
    Expiry sweep for operators. The request path never sweeps; it checks expiry on read.
    """
    purged = idem_store.purge_expired()
    log_event(logger, event_name="records_purged", fields={"purged": purged})
    return {"status": "ok", "purged": purged}
