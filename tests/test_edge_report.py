import json
from pathlib import Path

from ops.edge_report import read_jsonl, summarize


def test_read_jsonl_skips_malformed_lines(tmp_path: Path):
    p = tmp_path / "events.jsonl"
    p.write_text('{"event": "cache_hit"}\nnot json\n\n{"event": "cache_miss"}\n', encoding="utf-8")

    records = list(read_jsonl(p))
    assert [r["event"] for r in records] == ["cache_hit", "cache_miss"]
    assert list(read_jsonl(tmp_path / "missing.jsonl")) == []


def test_summarize_ratios_and_rejections():
    records = [
        {"event": "idempotency_claimed", "idempotency_key": "t:op:a"},
        {"event": "idempotency_replayed", "idempotency_key": "t:op:a"},
        {"event": "idempotency_replayed", "idempotency_key": "t:op:a"},
        {"event": "idempotency_claimed", "idempotency_key": "t:op:b"},
        {"event": "cache_hit"},
        {"event": "cache_hit"},
        {"event": "cache_hit"},
        {"event": "cache_miss"},
        {"event": "signature_rejected", "reason": "Invalid signature"},
        {"event": "request_rejected", "reason": "missing_tenant"},
        {"no_event": True},
    ]

    summary = summarize(records)

    assert summary["event_counts"]["idempotency_replayed"] == 2
    assert summary["replay_ratio"] == 0.5
    assert summary["cache_hit_ratio"] == 0.75
    assert summary["top_replayed_keys"] == [("t:op:a", 2)]
    assert summary["rejection_reasons"]["missing_tenant"] == 1
    assert summary["rejection_reasons"]["Invalid signature"] == 1


def test_summarize_empty():
    summary = summarize([])
    assert summary["replay_ratio"] == 0.0
    assert summary["cache_hit_ratio"] == 0.0
