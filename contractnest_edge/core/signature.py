import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional

from contractnest_edge.core.response_cache import ResponseCache

SIGNATURE_TOLERANCE_MS = 5 * 60 * 1000  # 5 minutes

SIGNATURE_HEADER = "x-internal-signature"
TIMESTAMP_HEADER = "x-timestamp"


@dataclass(frozen=True)
class SignatureCheck:
    is_valid: bool
    error: Optional[str] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign_payload(body: str, timestamp_ms: str, secret: str) -> str:
    """base64(HMAC-SHA256(secret, "<timestamp>.<body>"))"""
    message = f"{timestamp_ms}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    body: str,
    signature: str,
    timestamp: str,
    secret: str,
    replay_guard: Optional[ResponseCache] = None,
) -> SignatureCheck:
    """
    Verify the API layer's HMAC signature.

    The replay guard records signature+timestamp pairs in shared storage for
    the tolerance window with an atomic add; a pair seen twice is rejected,
    including when both deliveries race.
    """
    try:
        request_ms = int(str(timestamp).strip())
    except ValueError:
        return SignatureCheck(False, "Invalid x-timestamp header")

    diff = abs(_now_ms() - request_ms)
    if diff > SIGNATURE_TOLERANCE_MS:
        return SignatureCheck(
            False,
            f"Request timestamp expired. Diff: {diff}ms, Tolerance: {SIGNATURE_TOLERANCE_MS}ms",
        )

    expected = sign_payload(body, str(request_ms), secret)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return SignatureCheck(False, "Invalid signature")

    if replay_guard is not None:
        replay_key = "sig:" + hashlib.sha256(f"{signature}-{request_ms}".encode("utf-8")).hexdigest()
        seen = {"seen_at_ms": _now_ms()}
        if not replay_guard.add_if_absent(replay_key, seen, SIGNATURE_TOLERANCE_MS // 1000):
            return SignatureCheck(False, "Potential replay attack detected - duplicate request signature")

    return SignatureCheck(True)
