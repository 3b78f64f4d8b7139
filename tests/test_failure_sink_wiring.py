import time

import pytest

import contractnest_edge.main as main
from contractnest_edge.core.errors import InvalidSignature, MissingTenant, StoreUnavailable
from contractnest_edge.domain.schemas import EdgeContext


class FakeSink:
    def __init__(self):
        self.calls = []

    def notify(self, record):
        self.calls.append(record)


class UnavailableStore:
    def begin(self, key, request_hash, lease_seconds=120, owner_id=None):
        raise StoreUnavailable("Idempotency store unreachable: disk I/O error")


def _ctx() -> EdgeContext:
    return EdgeContext(operation_id="op-1", start_time=time.time(), tenant_id="tenant1")


def test_missing_tenant_notifies_failure_sink(monkeypatch):
    fake = FakeSink()
    monkeypatch.setattr(main, "failure_sink", fake)

    with pytest.raises(MissingTenant):
        main.extract_request_context({}, operation_id="op-1", start_time=time.time())

    assert len(fake.calls) == 1
    assert fake.calls[0].stage == "context"
    assert fake.calls[0].error_code == "MISSING_TENANT"


def test_invalid_signature_notifies_failure_sink(monkeypatch):
    fake = FakeSink()
    monkeypatch.setattr(main, "failure_sink", fake)
    monkeypatch.setenv("EDGE_SIGNING_SECRET", "s3cret")
    monkeypatch.setenv("SIGNATURE_REPLAY_PROTECTION", "false")

    headers = {"x-internal-signature": "bogus", "x-timestamp": str(int(time.time() * 1000))}
    with pytest.raises(InvalidSignature):
        main._verify_internal_signature(headers, "{}", _ctx())

    assert len(fake.calls) == 1
    assert fake.calls[0].stage == "signature"
    assert fake.calls[0].error_code == "INVALID_SIGNATURE"


def test_store_outage_notifies_failure_sink(monkeypatch):
    fake = FakeSink()
    monkeypatch.setattr(main, "failure_sink", fake)
    monkeypatch.setattr(main, "idem_store", UnavailableStore())
    monkeypatch.delenv("EDGE_SIGNING_SECRET", raising=False)

    with pytest.raises(StoreUnavailable):
        main._process_create_contract(_ctx(), {}, '{"title": "MSA"}')

    assert len(fake.calls) == 1
    assert fake.calls[0].stage == "idempotency"
    assert fake.calls[0].error_code == "STORE_UNAVAILABLE"
    assert fake.calls[0].context["idempotency_key"].startswith("tenant1:create-contract:")
