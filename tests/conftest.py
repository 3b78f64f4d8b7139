import os
import tempfile
from pathlib import Path

# Keep module-level stores (created when contractnest_edge.main is imported)
# out of the repo's data/ and logs/ directories.
_SCRATCH = Path(tempfile.mkdtemp(prefix="contractnest-edge-tests-"))
os.environ.setdefault("IDEMPOTENCY_DB_PATH", str(_SCRATCH / "idempotency.sqlite3"))
os.environ.setdefault("CACHE_DB_PATH", str(_SCRATCH / "response_cache.sqlite3"))
os.environ.setdefault("EDGE_LOG_PATH", str(_SCRATCH / "edge_events.jsonl"))
os.environ.setdefault("FAILURE_SINK_BACKEND", "log")
os.environ.setdefault("CONTRACTS_DIR", str(_SCRATCH / "contracts"))
