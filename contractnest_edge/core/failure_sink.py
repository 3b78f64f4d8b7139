import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol


DEFAULT_FAILURE_PATH = Path(__file__).resolve().parents[2] / "data" / "failures.jsonl"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class FailureRecord:
    """
    Operator-visible failure record.
    """

    timestamp: str
    stage: str  # context | signature | idempotency | handler | cache
    error_code: str
    message: str
    context: Dict[str, Any]


class FailureSink(Protocol):
    def notify(self, record: FailureRecord) -> None:
        """Hand a failure record to operators."""
        ...


class JsonlFileFailureSink:
    """
    Writes one JSON object per line into data/failures.jsonl.
    """

    def __init__(self, path: Path = DEFAULT_FAILURE_PATH):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, record: FailureRecord) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(record), default=str) + "\n")


class NullFailureSink:
    """For environments that only want the structured logs."""

    def notify(self, record: FailureRecord) -> None:
        return None


def get_failure_sink() -> FailureSink:
    """
    FAILURE_SINK_BACKEND:
      - "file" (default) -> JsonlFileFailureSink (FAILURE_SINK_PATH overrides the file)
      - "log"            -> NullFailureSink
    """
    backend = os.getenv("FAILURE_SINK_BACKEND", "file").strip().lower()
    if backend == "log":
        return NullFailureSink()
    path = os.getenv("FAILURE_SINK_PATH")
    return JsonlFileFailureSink(Path(path)) if path else JsonlFileFailureSink()


def make_failure(
    stage: str,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
) -> FailureRecord:
    return FailureRecord(
        timestamp=_utc_now_iso(),
        stage=stage,
        error_code=error_code,
        message=message,
        context=context or {},
    )
