from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import contractnest_edge.main as main
from contractnest_edge.core.idempotency_store import SQLiteIdempotencyStore, StoredResponse

KEY = "tenant1:create-contract:hash123"


@pytest.fixture
def store(tmp_path: Path, monkeypatch) -> SQLiteIdempotencyStore:
    s = SQLiteIdempotencyStore(db_path=tmp_path / "idem.sqlite3")
    monkeypatch.setattr(main, "idem_store", s)
    monkeypatch.setenv("OPS_API_KEY", "ops-key")
    return s


@pytest.fixture
def client() -> TestClient:
    return TestClient(main.app)


def test_ops_endpoints_require_api_key(client, store):
    assert client.get(f"/ops/idempotency/{KEY}").status_code == 403
    assert client.delete(f"/ops/idempotency/{KEY}", headers={"X-API-Key": "wrong"}).status_code == 403


def test_ops_endpoints_unconfigured_key(client, store, monkeypatch):
    monkeypatch.delenv("OPS_API_KEY")
    r = client.post("/ops/idempotency/purge", headers={"X-API-Key": "ops-key"})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "INTERNAL_ERROR"


def test_inspect_and_evict(client, store):
    headers = {"X-API-Key": "ops-key"}

    assert client.get(f"/ops/idempotency/{KEY}", headers=headers).json() == {"key": KEY, "status": "absent"}

    claim = store.begin(key=KEY, request_hash="h1", owner_id="worker-a")
    store.complete(key=KEY, owner_id=claim.owner_id, response=StoredResponse(201, {"ok": True}), ttl_seconds=60)

    body = client.get(f"/ops/idempotency/{KEY}", headers=headers).json()
    assert body["status"] == "completed"
    assert body["status_code"] == 201
    assert body["owner_id"] == "worker-a"

    assert client.delete(f"/ops/idempotency/{KEY}", headers=headers).json() == {"status": "ok", "evicted": True}
    assert store.get(KEY) is None
    assert client.delete(f"/ops/idempotency/{KEY}", headers=headers).json()["evicted"] is False


def test_purge(client, store):
    r = client.post("/ops/idempotency/purge", headers={"X-API-Key": "ops-key"})
    assert r.json() == {"status": "ok", "purged": 0}
