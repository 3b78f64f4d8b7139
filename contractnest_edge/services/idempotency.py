import time
from dataclasses import dataclass
from typing import Callable

from contractnest_edge.core.errors import IdempotencyConflict, StoreUnavailable
from contractnest_edge.core.fingerprint import RequestFingerprint
from contractnest_edge.core.idempotency_store import ClaimResult, IdempotencyStore, StoredResponse
from contractnest_edge.core.logging import get_logger, log_event

logger = get_logger()

MAX_POLL_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class IdempotentOutcome:
    response: StoredResponse
    replayed: bool


def _begin_with_wait(
    store: IdempotencyStore,
    fingerprint: RequestFingerprint,
    lease_seconds: int,
    wait_timeout_seconds: float,
    poll_interval_seconds: float,
) -> ClaimResult:
    """
    begin(), polling with exponential backoff while another request holds the
    key. Raises IdempotencyConflict once the wait budget is spent (immediately
    when it is zero).
    """
    key = fingerprint.key.value
    deadline = time.monotonic() + max(0.0, wait_timeout_seconds)
    delay = max(0.01, poll_interval_seconds)
    attempts = 0

    while True:
        attempts += 1
        try:
            return store.begin(key=key, request_hash=fingerprint.request_hash, lease_seconds=lease_seconds)
        except IdempotencyConflict as e:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log_event(
                    logger,
                    event_name="idempotency_conflict",
                    fields={
                        "idempotency_key": key,
                        "owner_id": e.context.get("owner_id"),
                        "attempts": attempts,
                        "waited_seconds": wait_timeout_seconds,
                    },
                )
                raise
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_POLL_INTERVAL_SECONDS)


def run_idempotent(
    store: IdempotencyStore,
    fingerprint: RequestFingerprint,
    handler: Callable[[], StoredResponse],
    ttl_seconds: int,
    lease_seconds: int = 120,
    wait_timeout_seconds: float = 0.0,
    poll_interval_seconds: float = 0.1,
) -> IdempotentOutcome:
    """
    Run a side-effecting handler at most once per idempotency key and epoch.

      - replay: the stored response is returned unchanged, handler not called
      - proceed: handler runs; success -> complete(ttl), failure -> abort + re-raise
      - in flight elsewhere: IdempotencyConflict (after the optional bounded wait)
    """
    key = fingerprint.key.value
    claim = _begin_with_wait(store, fingerprint, lease_seconds, wait_timeout_seconds, poll_interval_seconds)

    if not claim.proceed:
        log_event(
            logger,
            event_name="idempotency_replayed",
            fields={
                "idempotency_key": key,
                "status_code": claim.response.status_code if claim.response else None,
                "expires_at": claim.expires_at,
            },
        )
        return IdempotentOutcome(response=claim.response, replayed=True)

    owner_id = claim.owner_id
    log_event(
        logger,
        event_name="idempotency_claimed",
        fields={"idempotency_key": key, "owner_id": owner_id, "lease_until": claim.lease_until},
    )

    try:
        response = handler()
    except Exception as e:
        # Release the key so a retry can run the operation from scratch
        try:
            store.abort(key=key, owner_id=owner_id)
        except StoreUnavailable as abort_error:
            log_event(
                logger,
                event_name="idempotency_abort_failed",
                fields={"idempotency_key": key, "owner_id": owner_id, "error": str(abort_error)},
            )
        log_event(
            logger,
            event_name="idempotency_aborted",
            fields={"idempotency_key": key, "owner_id": owner_id, "error": str(e)},
        )
        raise

    store.complete(key=key, owner_id=owner_id, response=response, ttl_seconds=ttl_seconds)
    log_event(
        logger,
        event_name="idempotency_completed",
        fields={
            "idempotency_key": key,
            "owner_id": owner_id,
            "status_code": response.status_code,
            "ttl_seconds": ttl_seconds,
        },
    )
    return IdempotentOutcome(response=response, replayed=False)
