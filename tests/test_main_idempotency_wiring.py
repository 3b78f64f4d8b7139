import json
import time
from pathlib import Path

import pytest

import contractnest_edge.main as main
import contractnest_edge.services.contracts as contracts
from contractnest_edge.core.artifacts import LocalArtifactStore
from contractnest_edge.core.idempotency_store import ClaimResult, StoredResponse
from contractnest_edge.domain.schemas import EdgeContext


class FakeIdemStore:
    def __init__(self, claim: ClaimResult):
        self._claim = claim
        self.begin_calls = []
        self.complete_calls = []
        self.abort_calls = []

    def begin(self, key, request_hash, lease_seconds=120, owner_id=None):
        self.begin_calls.append({"key": key, "request_hash": request_hash, "lease_seconds": lease_seconds})
        return self._claim

    def complete(self, key, owner_id, response, ttl_seconds):
        self.complete_calls.append(
            {"key": key, "owner_id": owner_id, "response": response, "ttl_seconds": ttl_seconds}
        )

    def abort(self, key, owner_id):
        self.abort_calls.append({"key": key, "owner_id": owner_id})


def _ctx(idempotency_key=None) -> EdgeContext:
    return EdgeContext(
        operation_id="create_contract_1",
        start_time=time.time(),
        tenant_id="tenant1",
        idempotency_key=idempotency_key,
    )


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("EDGE_SIGNING_SECRET", raising=False)
    monkeypatch.setattr(contracts, "artifact_store", LocalArtifactStore(tmp_path / "contracts"))


def test_process_create_contract_claims_and_completes(monkeypatch):
    fake_store = FakeIdemStore(claim=ClaimResult(outcome="proceed", owner_id="worker-a"))
    monkeypatch.setattr(main, "idem_store", fake_store)

    resp = main._process_create_contract(_ctx("idem-123"), {}, json.dumps({"title": "MSA"}))

    assert resp.status_code == 201
    assert resp.headers["Idempotency-Replayed"] == "false"
    assert resp.headers["X-Idempotency-Key"] == "tenant1:create-contract:idem-123"

    assert len(fake_store.begin_calls) == 1
    assert fake_store.begin_calls[0]["key"] == "tenant1:create-contract:idem-123"
    assert fake_store.begin_calls[0]["lease_seconds"] == main.edge_policy.defaults.pending_lease_seconds

    assert len(fake_store.complete_calls) == 1
    completed = fake_store.complete_calls[0]
    assert completed["owner_id"] == "worker-a"
    assert completed["ttl_seconds"] == main.edge_policy.defaults.idempotency_ttl_seconds
    assert completed["response"].status_code == 201
    assert completed["response"].payload["data"]["title"] == "MSA"
    assert fake_store.abort_calls == []


def test_process_create_contract_replays_without_side_effect(monkeypatch):
    stored = StoredResponse(status_code=201, payload={"success": True, "data": {"contract_id": "c-1"}})
    fake_store = FakeIdemStore(claim=ClaimResult(outcome="replay", response=stored))
    monkeypatch.setattr(main, "idem_store", fake_store)

    def must_not_run(ctx, request):
        raise AssertionError("create_contract must not run on replay")

    monkeypatch.setattr(main, "create_contract", must_not_run)

    resp = main._process_create_contract(_ctx("idem-123"), {}, json.dumps({"title": "MSA"}))

    assert resp.status_code == 201
    assert resp.headers["Idempotency-Replayed"] == "true"
    assert json.loads(resp.body) == stored.payload
    assert fake_store.complete_calls == []


def test_process_create_contract_aborts_on_handler_exception(monkeypatch):
    fake_store = FakeIdemStore(claim=ClaimResult(outcome="proceed", owner_id="worker-a"))
    monkeypatch.setattr(main, "idem_store", fake_store)

    def boom(ctx, request):
        raise RuntimeError("write exploded")

    monkeypatch.setattr(main, "create_contract", boom)

    with pytest.raises(RuntimeError):
        main._process_create_contract(_ctx(), {}, json.dumps({"title": "MSA"}))

    assert len(fake_store.abort_calls) == 1
    assert fake_store.abort_calls[0]["owner_id"] == "worker-a"
    assert fake_store.complete_calls == []
