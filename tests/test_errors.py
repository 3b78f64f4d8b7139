import json

from contractnest_edge.core.errors import (
    ClaimLost,
    EdgeError,
    IdempotencyConflict,
    IdempotencyKeyReused,
    StoreUnavailable,
)


def test_error_status_and_retryable():
    assert (IdempotencyConflict().status_code, IdempotencyConflict().retryable) == (409, True)
    assert (IdempotencyKeyReused().status_code, IdempotencyKeyReused().retryable) == (422, False)
    assert (ClaimLost().status_code, ClaimLost().retryable) == (409, True)
    assert (StoreUnavailable().status_code, StoreUnavailable().retryable) == (503, True)
    assert EdgeError().status_code == 500


def test_error_envelope_shape():
    resp = StoreUnavailable("store down", context={"key": "k"}).to_response(request_id="op-1")
    body = json.loads(resp.body)

    assert resp.status_code == 503
    assert body["success"] is False
    assert body["error"] == {"code": "STORE_UNAVAILABLE", "message": "store down", "retryable": True}
    assert body["metadata"]["request_id"] == "op-1"
    assert body["metadata"]["timestamp"]
