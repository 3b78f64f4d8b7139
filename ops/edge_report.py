import json
import os
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List

LOG_PATH = Path(__file__).resolve().parents[1] / "logs" / "edge_events.jsonl"

IDEMPOTENCY_EVENTS = (
    "idempotency_claimed",
    "idempotency_completed",
    "idempotency_replayed",
    "idempotency_conflict",
    "idempotency_aborted",
)


def read_jsonl(path: Path) -> Iterable[Dict[str, Any]]:
    if not path.exists():
        return []
    records: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # Skip malformed lines rather than crashing ops reporting
                continue
    return records


def summarize(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    event_counts: Counter = Counter()
    rejection_reasons: Counter = Counter()
    replayed_keys: Counter = Counter()

    for r in records:
        event_name = r.get("event")
        if not event_name:
            continue
        event_counts[event_name] += 1
        if event_name in ("signature_rejected", "request_rejected") and r.get("reason"):
            rejection_reasons[str(r["reason"])] += 1
        if event_name == "idempotency_replayed" and r.get("idempotency_key"):
            replayed_keys[str(r["idempotency_key"])] += 1

    claimed = event_counts["idempotency_claimed"]
    replayed = event_counts["idempotency_replayed"]
    hits = event_counts["cache_hit"]
    misses = event_counts["cache_miss"]

    return {
        "event_counts": event_counts,
        "rejection_reasons": rejection_reasons,
        "top_replayed_keys": replayed_keys.most_common(10),
        "replay_ratio": replayed / (claimed + replayed) if (claimed + replayed) else 0.0,
        "cache_hit_ratio": hits / (hits + misses) if (hits + misses) else 0.0,
    }


def main() -> None:
    log_path = Path(os.getenv("EDGE_LOG_PATH") or LOG_PATH)
    records = list(read_jsonl(log_path))

    if not records:
        print("No log records found yet.")
        print(f"Expected log file at: {log_path}")
        return

    summary = summarize(records)

    print("=== ContractNest Edge Ops Report ===")
    print(f"Log file: {log_path}")
    print(f"Total records: {len(records)}")
    print()

    print("---- Idempotency ----")
    for name in IDEMPOTENCY_EVENTS:
        print(f"{name}: {summary['event_counts'][name]}")
    print(f"replay ratio: {summary['replay_ratio']:.2%}")
    print()

    print("---- Response cache ----")
    print(f"hits: {summary['event_counts']['cache_hit']}  misses: {summary['event_counts']['cache_miss']}")
    print(f"hit ratio: {summary['cache_hit_ratio']:.2%}")
    print()

    if summary["top_replayed_keys"]:
        print("---- Most replayed keys ----")
        for k, v in summary["top_replayed_keys"]:
            print(f"{k}: {v}")
        print()

    if summary["rejection_reasons"]:
        print("---- Rejections ----")
        for k, v in summary["rejection_reasons"].most_common():
            print(f"{k}: {v}")
        print()


if __name__ == "__main__":
    main()
