import json
from pathlib import Path

from contractnest_edge.core.failure_sink import (
    JsonlFileFailureSink,
    NullFailureSink,
    get_failure_sink,
    make_failure,
)


def test_failure_sink_writes_jsonl(tmp_path: Path):
    path = tmp_path / "failures.jsonl"
    sink = JsonlFileFailureSink(path=path)

    record = make_failure(
        stage="idempotency",
        error_code="STORE_UNAVAILABLE",
        message="Idempotency store unreachable",
        context={"tenant_id": "tenant1"},
    )

    sink.notify(record)

    lines = path.read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 1

    obj = json.loads(lines[0])
    assert obj["stage"] == "idempotency"
    assert obj["error_code"] == "STORE_UNAVAILABLE"
    assert obj["message"] == "Idempotency store unreachable"
    assert obj["context"]["tenant_id"] == "tenant1"
    assert obj["timestamp"]


def test_get_failure_sink_backends(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAILURE_SINK_BACKEND", "log")
    assert isinstance(get_failure_sink(), NullFailureSink)

    path = tmp_path / "f.jsonl"
    monkeypatch.setenv("FAILURE_SINK_BACKEND", "file")
    monkeypatch.setenv("FAILURE_SINK_PATH", str(path))
    sink = get_failure_sink()
    assert isinstance(sink, JsonlFileFailureSink)
    assert sink.path == path
