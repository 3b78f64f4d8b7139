import hashlib
import json
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class IdempotencyKey:
    """
    Composite idempotency key: tenant scope + operation + content hash.

    Rendered as "<scope>:<operation_id>:<content_hash>", e.g.
    "tenant1:create-contract:hash123".
    """

    scope: str
    operation_id: str
    content_hash: str

    @property
    def value(self) -> str:
        return f"{self.scope}:{self.operation_id}:{self.content_hash}"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RequestFingerprint:
    key: IdempotencyKey
    request_hash: str


def canonical_json(value: Any) -> str:
    # Sorted keys + compact separators so dict ordering never changes a hash
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def hash_request(method: str, path: str, product_code: Optional[str], body: Any) -> str:
    canonical = canonical_json(
        {
            "method": method.upper(),
            "path": path,
            "product": product_code,
            "body": body,
        }
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint_request(
    tenant_id: str,
    operation_id: str,
    method: str,
    path: str,
    product_code: Optional[str],
    body: Any,
    client_key: Optional[str] = None,
) -> RequestFingerprint:
    """
    Derive the idempotency fingerprint for an inbound request.

    Without a client key the request hash itself is the content component,
    so byte-for-byte duplicate submissions land on the same key. A client
    supplied key replaces the content component; the request hash is kept
    alongside so a reused key with a different payload can be rejected.
    """
    tenant = (tenant_id or "").strip()
    operation = (operation_id or "").strip()
    if not tenant:
        raise ValueError("tenant_id is required for an idempotency key")
    if not operation:
        raise ValueError("operation_id is required for an idempotency key")

    request_hash = hash_request(method, path, product_code, body)
    client = (client_key or "").strip()
    content = client if client else request_hash

    return RequestFingerprint(
        key=IdempotencyKey(scope=tenant, operation_id=operation, content_hash=content),
        request_hash=request_hash,
    )
