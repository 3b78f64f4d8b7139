import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

# Log file path: <repo_root>/logs/edge_events.jsonl (override with EDGE_LOG_PATH)
LOG_FILE_PATH = Path(__file__).resolve().parents[2] / "logs" / "edge_events.jsonl"


def _log_file_path() -> Path:
    override = os.getenv("EDGE_LOG_PATH")
    return Path(override) if override else LOG_FILE_PATH


def get_logger(name: str = "contractnest-edge") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        # Avoid duplicate handlers in reload mode
        return logger

    logger.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    return logger


def log_event(logger: logging.Logger, event_name: str, fields: Dict[str, Any]) -> None:
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event_name,
        **fields,
    }

    line = json.dumps(record, default=str)

    # 1) Emit to terminal (stdout)
    logger.info(line)

    # 2) Persist to JSONL file for ops/reporting
    path = _log_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
