import hashlib
import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from contractnest_edge.core.errors import (
    ClaimLost,
    IdempotencyConflict,
    IdempotencyKeyReused,
    StoreUnavailable,
)

DB_PATH = Path(__file__).resolve().parents[2] / "data" / "idempotency.sqlite3"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"

OUTCOME_PROCEED = "proceed"
OUTCOME_REPLAY = "replay"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_iso(dt: datetime) -> str:
    # Fixed-width UTC serialization so stored timestamps also sort lexicographically
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _iso_to_dt(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    payload: Dict[str, Any]


@dataclass(frozen=True)
class IdempotencyRecord:
    """
    Durable lifecycle row for one idempotency key.

    status values:
      - "pending"   : a handler claimed the key and is running
      - "completed" : response stored until expires_at
    Absent is the lack of a record.
    """

    key: str
    status: str
    owner_id: Optional[str]
    request_hash: Optional[str]
    response: Optional[StoredResponse]
    created_at: datetime
    updated_at: datetime
    lease_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return (
            self.status == STATUS_COMPLETED
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def lease_lapsed(self, now: datetime) -> bool:
        return self.status == STATUS_PENDING and (self.lease_until is None or self.lease_until <= now)


@dataclass(frozen=True)
class ClaimResult:
    """
    Result of begin().

    outcome = "proceed" means the caller owns the pending marker (owner_id)
    and must finish with complete() or abort().
    outcome = "replay" means a completed, unexpired response exists.
    """

    outcome: str
    owner_id: Optional[str] = None
    response: Optional[StoredResponse] = None
    lease_until: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def proceed(self) -> bool:
        return self.outcome == OUTCOME_PROCEED


def _check_existing(
    key: str,
    existing: Optional[IdempotencyRecord],
    request_hash: str,
    now: datetime,
) -> Optional[ClaimResult]:
    """
    Decide what begin() does with the current record.

    Returns a replay ClaimResult, raises for in-flight or reused keys, or
    returns None when the caller may write a fresh pending marker.
    """
    if existing is None or existing.is_expired(now) or existing.lease_lapsed(now):
        return None

    if existing.status == STATUS_COMPLETED:
        if existing.request_hash and request_hash and existing.request_hash != request_hash:
            raise IdempotencyKeyReused(
                "Idempotency key was already used with a different request payload",
                context={"key": key},
            )
        return ClaimResult(
            outcome=OUTCOME_REPLAY,
            owner_id=existing.owner_id,
            response=existing.response,
            expires_at=existing.expires_at,
        )

    raise IdempotencyConflict(
        "A request with this idempotency key is already in progress",
        context={"key": key, "owner_id": existing.owner_id, "lease_until": existing.lease_until},
    )


class IdempotencyStore:
    """
    Interface for the durable, multi-instance idempotency store.

    Lifecycle: Absent -> Pending -> Completed, Pending -> Absent on abort.
    Atomicity is delegated to the backend (transactional read-then-write);
    handlers never rely on in-process locks.
    """

    def begin(
        self,
        key: str,
        request_hash: str,
        lease_seconds: int = 120,
        owner_id: Optional[str] = None,
    ) -> ClaimResult:
        raise NotImplementedError

    def complete(self, key: str, owner_id: str, response: StoredResponse, ttl_seconds: int) -> None:
        raise NotImplementedError

    def abort(self, key: str, owner_id: str) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        raise NotImplementedError

    def evict(self, key: str) -> bool:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError


class SQLiteIdempotencyStore(IdempotencyStore):
    """
    SQLite-backed idempotency store.

    NOTE:
    - BEGIN IMMEDIATE takes the write lock before the read, so two claims for
      the same key serialize and exactly one of them writes the pending marker.
    - Shared across processes on one host; not across hosts.
    """

    def __init__(self, db_path: Path = DB_PATH, timeout_seconds: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout_seconds = timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Idempotency store unreachable: {e}") from e
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_records (
                    key TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    owner_id TEXT,
                    request_hash TEXT,
                    status_code INTEGER,
                    payload TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    lease_until TEXT,
                    expires_at TEXT
                )
                """
            )

    @staticmethod
    def _row_to_record(row: tuple) -> IdempotencyRecord:
        (
            key,
            status,
            owner_id,
            request_hash,
            status_code,
            payload,
            created_at,
            updated_at,
            lease_until,
            expires_at,
        ) = row
        response = None
        if status == STATUS_COMPLETED and payload is not None:
            response = StoredResponse(status_code=int(status_code), payload=json.loads(payload))
        return IdempotencyRecord(
            key=key,
            status=status,
            owner_id=owner_id,
            request_hash=request_hash,
            response=response,
            created_at=_iso_to_dt(created_at),
            updated_at=_iso_to_dt(updated_at),
            lease_until=_iso_to_dt(lease_until),
            expires_at=_iso_to_dt(expires_at),
        )

    def _select(self, conn: sqlite3.Connection, key: str) -> Optional[IdempotencyRecord]:
        row = conn.execute(
            """
            SELECT key, status, owner_id, request_hash, status_code, payload,
                   created_at, updated_at, lease_until, expires_at
            FROM idempotency_records WHERE key = ?
            """,
            (key,),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def begin(
        self,
        key: str,
        request_hash: str,
        lease_seconds: int = 120,
        owner_id: Optional[str] = None,
    ) -> ClaimResult:
        owner_id = owner_id or f"claim-{uuid.uuid4()}"
        now = _utc_now()
        lease_until = now + timedelta(seconds=lease_seconds)
        now_iso = _dt_to_iso(now)

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")  # lock for atomic claim

            existing = self._select(conn, key)
            result = _check_existing(key, existing, request_hash, now)
            if result is not None:
                conn.execute("COMMIT;")
                return result

            # Absent, expired or abandoned: start a new epoch with our pending marker
            conn.execute(
                """
                INSERT INTO idempotency_records
                    (key, status, owner_id, request_hash, status_code, payload,
                     created_at, updated_at, lease_until, expires_at)
                VALUES (?, 'pending', ?, ?, NULL, NULL, ?, ?, ?, NULL)
                ON CONFLICT(key) DO UPDATE SET
                    status='pending',
                    owner_id=excluded.owner_id,
                    request_hash=excluded.request_hash,
                    status_code=NULL,
                    payload=NULL,
                    created_at=excluded.created_at,
                    updated_at=excluded.updated_at,
                    lease_until=excluded.lease_until,
                    expires_at=NULL
                """,
                (key, owner_id, request_hash, now_iso, now_iso, _dt_to_iso(lease_until)),
            )
            conn.execute("COMMIT;")

        return ClaimResult(outcome=OUTCOME_PROCEED, owner_id=owner_id, lease_until=lease_until)

    def complete(self, key: str, owner_id: str, response: StoredResponse, ttl_seconds: int) -> None:
        now = _utc_now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE idempotency_records
                SET status='completed',
                    status_code=?,
                    payload=?,
                    updated_at=?,
                    lease_until=NULL,
                    expires_at=?
                WHERE key=? AND status='pending' AND owner_id=?
                """,
                (
                    response.status_code,
                    json.dumps(response.payload, default=str),
                    _dt_to_iso(now),
                    _dt_to_iso(expires_at),
                    key,
                    owner_id,
                ),
            )
            if cur.rowcount == 0:
                raise ClaimLost(
                    "Pending marker is gone or owned by another claim",
                    context={"key": key, "owner_id": owner_id},
                )

    def abort(self, key: str, owner_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM idempotency_records WHERE key=? AND status='pending' AND owner_id=?",
                (key, owner_id),
            )

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._connect() as conn:
            record = self._select(conn, key)
        if record is None or record.is_expired(_utc_now()):
            return None
        return record

    def evict(self, key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM idempotency_records WHERE key=?", (key,))
            return cur.rowcount > 0

    def purge_expired(self) -> int:
        now_iso = _dt_to_iso(_utc_now())
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM idempotency_records
                WHERE (status='completed' AND expires_at <= ?)
                   OR (status='pending' AND (lease_until IS NULL OR lease_until <= ?))
                """,
                (now_iso, now_iso),
            )
            return cur.rowcount


class FirestoreIdempotencyStore(IdempotencyStore):
    """
    Firestore-backed shared idempotency store (multi-server safe).

    Claims run inside Firestore transactions, which retry on contention, so
    the read-then-create is the atomic primitive.
    Requirements:
      - google-cloud-firestore installed
      - service account / ADC configured in environment

    Environment:
      - FIRESTORE_PROJECT_ID (optional if ADC provides)
      - IDEMPOTENCY_COLLECTION (default: "idempotency_records")
    """

    def __init__(self, project_id: Optional[str] = None, collection: Optional[str] = None):
        try:
            from google.api_core import exceptions as google_exceptions  # type: ignore
            from google.cloud import firestore  # type: ignore
        except ImportError as e:
            raise RuntimeError(
                "google-cloud-firestore is required for FirestoreIdempotencyStore. "
                "Install with: pip install 'contractnest-edge[firestore]'"
            ) from e

        self._firestore = firestore
        self._api_errors = (google_exceptions.GoogleAPIError,)
        self.project_id = project_id or os.getenv("FIRESTORE_PROJECT_ID")
        self.collection = collection or os.getenv("IDEMPOTENCY_COLLECTION", "idempotency_records")

        if self.project_id:
            self.client = firestore.Client(project=self.project_id)
        else:
            self.client = firestore.Client()

    def _doc_ref(self, key: str):
        # Keys may contain "/" (client supplied); document ids may not
        doc_id = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.client.collection(self.collection).document(doc_id)

    @staticmethod
    def _snapshot_to_record(key: str, data: Dict[str, Any]) -> IdempotencyRecord:
        status = data.get("status", STATUS_PENDING)
        response = None
        if status == STATUS_COMPLETED and data.get("payload") is not None:
            response = StoredResponse(
                status_code=int(data.get("status_code") or 200),
                payload=json.loads(data["payload"]),
            )
        return IdempotencyRecord(
            key=key,
            status=status,
            owner_id=data.get("owner_id"),
            request_hash=data.get("request_hash"),
            response=response,
            created_at=_iso_to_dt(data.get("created_at")) or _utc_now(),
            updated_at=_iso_to_dt(data.get("updated_at")) or _utc_now(),
            lease_until=_iso_to_dt(data.get("lease_until")),
            expires_at=_iso_to_dt(data.get("expires_at")),
        )

    def begin(
        self,
        key: str,
        request_hash: str,
        lease_seconds: int = 120,
        owner_id: Optional[str] = None,
    ) -> ClaimResult:
        owner_id = owner_id or f"claim-{uuid.uuid4()}"
        now = _utc_now()
        lease_until = now + timedelta(seconds=lease_seconds)
        now_iso = _dt_to_iso(now)

        doc_ref = self._doc_ref(key)
        firestore = self._firestore

        @firestore.transactional
        def _txn_begin(txn):
            snap = doc_ref.get(transaction=txn)
            existing = self._snapshot_to_record(key, snap.to_dict() or {}) if snap.exists else None

            result = _check_existing(key, existing, request_hash, now)
            if result is not None:
                return result

            txn.set(
                doc_ref,
                {
                    "key": key,
                    "status": STATUS_PENDING,
                    "owner_id": owner_id,
                    "request_hash": request_hash,
                    "status_code": None,
                    "payload": None,
                    "created_at": now_iso,
                    "updated_at": now_iso,
                    "lease_until": _dt_to_iso(lease_until),
                    "expires_at": None,
                },
            )
            return ClaimResult(outcome=OUTCOME_PROCEED, owner_id=owner_id, lease_until=lease_until)

        try:
            return _txn_begin(firestore.Transaction(self.client))
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e

    def complete(self, key: str, owner_id: str, response: StoredResponse, ttl_seconds: int) -> None:
        now = _utc_now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        doc_ref = self._doc_ref(key)
        firestore = self._firestore

        @firestore.transactional
        def _txn_complete(txn):
            snap = doc_ref.get(transaction=txn)
            data = (snap.to_dict() or {}) if snap.exists else {}
            if data.get("status") != STATUS_PENDING or data.get("owner_id") != owner_id:
                return False
            txn.update(
                doc_ref,
                {
                    "status": STATUS_COMPLETED,
                    "status_code": response.status_code,
                    "payload": json.dumps(response.payload, default=str),
                    "updated_at": _dt_to_iso(now),
                    "lease_until": None,
                    "expires_at": _dt_to_iso(expires_at),
                },
            )
            return True

        try:
            completed = _txn_complete(firestore.Transaction(self.client))
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e
        if not completed:
            raise ClaimLost(
                "Pending marker is gone or owned by another claim",
                context={"key": key, "owner_id": owner_id},
            )

    def abort(self, key: str, owner_id: str) -> None:
        doc_ref = self._doc_ref(key)
        firestore = self._firestore

        @firestore.transactional
        def _txn_abort(txn):
            snap = doc_ref.get(transaction=txn)
            if not snap.exists:
                return
            data = snap.to_dict() or {}
            if data.get("status") == STATUS_PENDING and data.get("owner_id") == owner_id:
                txn.delete(doc_ref)

        try:
            _txn_abort(firestore.Transaction(self.client))
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        try:
            snap = self._doc_ref(key).get()
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e
        if not snap.exists:
            return None
        record = self._snapshot_to_record(key, snap.to_dict() or {})
        if record.is_expired(_utc_now()):
            return None
        return record

    def evict(self, key: str) -> bool:
        doc_ref = self._doc_ref(key)
        try:
            existed = doc_ref.get().exists
            doc_ref.delete()
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e
        return existed

    def purge_expired(self) -> int:
        now = _utc_now()
        removed = 0
        try:
            for snap in self.client.collection(self.collection).stream():
                data = snap.to_dict() or {}
                record = self._snapshot_to_record(data.get("key", snap.id), data)
                if record.is_expired(now) or record.lease_lapsed(now):
                    snap.reference.delete()
                    removed += 1
        except self._api_errors as e:
            raise StoreUnavailable(f"Idempotency store error: {e}") from e
        return removed


def get_idempotency_store() -> IdempotencyStore:
    """
    Factory for selecting idempotency backend.

    IDEMPOTENCY_BACKEND:
      - "sqlite" (default) : single host (IDEMPOTENCY_DB_PATH overrides the file)
      - "firestore"        : shared multi-server safe
    """
    backend = os.getenv("IDEMPOTENCY_BACKEND", "sqlite").lower().strip()
    if backend == "firestore":
        return FirestoreIdempotencyStore()
    db_path = os.getenv("IDEMPOTENCY_DB_PATH")
    return SQLiteIdempotencyStore(db_path=Path(db_path)) if db_path else SQLiteIdempotencyStore()
