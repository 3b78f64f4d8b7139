import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError


CONFIG_DIR = Path(__file__).resolve().parents[2] / "configs"

IDEMPOTENCY_TTL_HOURS = 24


class PolicyDefaults(BaseModel):
    idempotency_ttl_seconds: int = Field(
        IDEMPOTENCY_TTL_HOURS * 3600,
        description="How long a completed response is replayed",
    )
    pending_lease_seconds: int = Field(
        120,
        description="How long a pending marker blocks duplicates before it counts as abandoned",
    )
    conflict_wait_seconds: float = Field(
        0.0,
        description="How long a duplicate waits for the in-flight request before returning 409",
    )
    cache_ttl_seconds: int = Field(30, description="Read-through cache TTL for cacheable operations")


class OperationPolicy(BaseModel):
    operation_id: str = Field(..., description="Stable operation name used in idempotency keys")
    method: str = Field(..., description="HTTP method")
    path: str = Field(..., description="Route path as registered")
    idempotent: bool = Field(False, description="Run writes through the idempotency store")
    cacheable: bool = Field(False, description="Serve through the read-through response cache")
    idempotency_ttl_seconds: Optional[int] = None
    pending_lease_seconds: Optional[int] = None
    conflict_wait_seconds: Optional[float] = None
    cache_ttl_seconds: Optional[int] = None


class EdgePolicy(BaseModel):
    """
    Per-operation idempotency and caching policy.
    """

    version: str = Field(..., description="Config version string")
    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    operations: List[OperationPolicy] = Field(default_factory=list)

    def validate_internal_consistency(self) -> None:
        seen_ids = set()
        seen_routes = set()
        for op in self.operations:
            if op.operation_id in seen_ids:
                raise ValueError(f"Duplicate operation_id '{op.operation_id}'")
            seen_ids.add(op.operation_id)

            route = (op.method.upper(), op.path)
            if route in seen_routes:
                raise ValueError(f"Duplicate route {op.method.upper()} {op.path}")
            seen_routes.add(route)

            if op.idempotent and op.method.upper() == "GET":
                raise ValueError(f"Operation '{op.operation_id}': GET operations cannot be idempotent writes")
            if op.cacheable and op.method.upper() != "GET":
                raise ValueError(f"Operation '{op.operation_id}': only GET operations can be cacheable")

            for name in ("idempotency_ttl_seconds", "pending_lease_seconds", "cache_ttl_seconds"):
                value = getattr(op, name)
                if value is not None and value <= 0:
                    raise ValueError(f"Operation '{op.operation_id}': {name} must be > 0")

    def find(self, method: str, path: str) -> Optional[OperationPolicy]:
        for op in self.operations:
            if op.method.upper() == method.upper() and op.path == path:
                return op
        return None

    def idempotency_ttl(self, op: OperationPolicy) -> int:
        return op.idempotency_ttl_seconds or self.defaults.idempotency_ttl_seconds

    def pending_lease(self, op: OperationPolicy) -> int:
        return op.pending_lease_seconds or self.defaults.pending_lease_seconds

    def conflict_wait(self, op: OperationPolicy) -> float:
        if op.conflict_wait_seconds is not None:
            return op.conflict_wait_seconds
        return self.defaults.conflict_wait_seconds

    def cache_ttl(self, op: OperationPolicy) -> int:
        return op.cache_ttl_seconds or self.defaults.cache_ttl_seconds


def load_edge_policy(path: Optional[Path] = None) -> EdgePolicy:
    """
    Load and validate the edge policy.
    Raises on invalid structure or internal inconsistency.
    """
    env_path = os.getenv("EDGE_POLICY_PATH")
    config_path = path or (Path(env_path) if env_path else CONFIG_DIR / "edge.json")

    if not config_path.exists():
        raise FileNotFoundError(f"Edge policy not found: {config_path}")

    raw = json.loads(config_path.read_text(encoding="utf-8"))

    try:
        policy = EdgePolicy.model_validate(raw)
    except ValidationError as e:
        raise RuntimeError(f"Edge policy validation failed: {e}") from e

    policy.validate_internal_consistency()
    return policy
