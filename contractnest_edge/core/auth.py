import hmac
import os

from fastapi import Header

from contractnest_edge.core.errors import EdgeError, Forbidden


def require_ops_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    """Guard for operator endpoints (eviction, purge)."""
    expected = os.getenv("OPS_API_KEY")
    if not expected:
        raise EdgeError("OPS_API_KEY not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise Forbidden("Forbidden")
