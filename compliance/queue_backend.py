from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from compliance.config import _env_int
from compliance.domain import AnalysisRequest
from compliance.errors import QueueFullError


@dataclass
class QueueMessage:
    """A queued payload; in-flight messages carry the owning worker and its lease."""

    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    worker_id: str | None = None
    leased_until: str | None = None

    def lease_expired(self, *, now: datetime | None = None) -> bool:
        until = _parse_iso(self.leased_until)
        if until is None:
            return True
        return until <= (now or datetime.now(UTC))


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _lease_until_iso(lease_s: float) -> str:
    return (datetime.now(UTC) + timedelta(seconds=max(0.0, float(lease_s)))).isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _owned_by(current: Any, worker_id: str | None) -> bool:
    return worker_id is None or current == worker_id


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class InMemoryQueueBackend:
    """Process-local FIFO queue; nothing survives a restart."""

    durable = False

    def __init__(self, *, max_depth: int = 0) -> None:
        self.max_depth = max(0, int(max_depth))
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def enqueue(self, *, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            if self.max_depth and len(queue) >= self.max_depth:
                raise QueueFullError(queue_name=queue_name, max_depth=self.max_depth)
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                payload=payload,
                attempt=int(payload.get("attempt", 0)),
            )
            queue.append(msg)
            return msg

    def dequeue(self, *, queue_name: str, worker_id: str = "", lease_s: float = 60.0) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            if not queue:
                return None
            msg = queue.popleft()
            msg.worker_id = worker_id
            msg.leased_until = _lease_until_iso(lease_s)
            self._inflight[msg.message_id] = msg
            return msg

    def renew(self, *, message_id: str, worker_id: str, lease_s: float) -> bool:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None or msg.worker_id != worker_id:
                return False
            msg.leased_until = _lease_until_iso(lease_s)
            return True

    def ack(self, *, message_id: str, worker_id: str | None = None) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is not None and _owned_by(msg.worker_id, worker_id):
                del self._inflight[message_id]

    def nack(
        self,
        *,
        message_id: str,
        payload: dict[str, Any] | None = None,
        expired_only: bool = False,
    ) -> QueueMessage | None:
        """Put an in-flight message back at the head of its queue."""
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None or (expired_only and not msg.lease_expired()):
                return None
            del self._inflight[message_id]
            msg.attempt += 1
            msg.worker_id = None
            msg.leased_until = None
            if payload is not None:
                msg.payload = payload
            self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def pending_messages(self, *, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            return list(self._queues.get(queue_name, deque()))

    def inflight_messages(self, *, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            return [msg for msg in self._inflight.values() if msg.queue_name == queue_name]

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


class SqliteQueueBackend:
    """SQLite-backed queue shared by every process using the same file.

    In-flight rows record the worker holding them and how long its lease
    lasts; reconciliation only reclaims rows whose lease ran out.
    """

    durable = True

    def __init__(self, db_path: str | Path, *, max_depth: int = 0) -> None:
        self.max_depth = max(0, int(max_depth))
        self._lock = threading.RLock()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_queue_messages (
                    message_id TEXT PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    worker_id TEXT,
                    leased_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_analysis_queue_lookup
                ON analysis_queue_messages(queue_name, status, created_at)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            worker_id=row["worker_id"],
            leased_until=row["leased_until"],
        )

    def _count(self, conn: sqlite3.Connection, *, queue_name: str, status: str) -> int:
        row = conn.execute(
            """
            SELECT COUNT(1) AS cnt
            FROM analysis_queue_messages
            WHERE queue_name = ? AND status = ?
            """,
            (queue_name, status),
        ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def enqueue(self, *, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        with self._lock:
            now = _utcnow_iso()
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                payload=payload,
                attempt=int(payload.get("attempt", 0)),
            )
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                if self.max_depth and self._count(conn, queue_name=queue_name, status="pending") >= self.max_depth:
                    conn.rollback()
                    raise QueueFullError(queue_name=queue_name, max_depth=self.max_depth)
                conn.execute(
                    """
                    INSERT INTO analysis_queue_messages(
                        message_id, queue_name, payload, attempt, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        msg.message_id,
                        msg.queue_name,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        msg.attempt,
                        now,
                        now,
                    ),
                )
                conn.commit()
            return msg

    def dequeue(self, *, queue_name: str, worker_id: str = "", lease_s: float = 60.0) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, queue_name, payload, attempt, worker_id, leased_until
                    FROM analysis_queue_messages
                    WHERE queue_name = ? AND status = 'pending'
                    ORDER BY created_at ASC, message_id ASC
                    LIMIT 1
                    """,
                    (queue_name,),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                msg = self._row_to_message(row)
                msg.worker_id = worker_id
                msg.leased_until = _lease_until_iso(lease_s)
                conn.execute(
                    """
                    UPDATE analysis_queue_messages
                    SET status = 'inflight', worker_id = ?, leased_until = ?, updated_at = ?
                    WHERE message_id = ?
                    """,
                    (msg.worker_id, msg.leased_until, _utcnow_iso(), msg.message_id),
                )
                conn.commit()
                return msg

    def renew(self, *, message_id: str, worker_id: str, lease_s: float) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE analysis_queue_messages
                    SET leased_until = ?, updated_at = ?
                    WHERE message_id = ? AND status = 'inflight' AND worker_id = ?
                    """,
                    (_lease_until_iso(lease_s), _utcnow_iso(), message_id, worker_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def ack(self, *, message_id: str, worker_id: str | None = None) -> None:
        sql = "DELETE FROM analysis_queue_messages WHERE message_id = ? AND status = 'inflight'"
        params: tuple[Any, ...] = (message_id,)
        if worker_id is not None:
            sql += " AND worker_id = ?"
            params = (message_id, worker_id)
        with self._lock:
            with self._connect() as conn:
                conn.execute(sql, params)
                conn.commit()

    def nack(
        self,
        *,
        message_id: str,
        payload: dict[str, Any] | None = None,
        expired_only: bool = False,
    ) -> QueueMessage | None:
        """Return an in-flight message to the queue; it keeps its original position."""
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, queue_name, payload, attempt, worker_id, leased_until
                    FROM analysis_queue_messages
                    WHERE message_id = ? AND status = 'inflight'
                    LIMIT 1
                    """,
                    (message_id,),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                msg = self._row_to_message(row)
                if expired_only and not msg.lease_expired():
                    conn.commit()
                    return None
                msg.attempt += 1
                msg.worker_id = None
                msg.leased_until = None
                if payload is not None:
                    msg.payload = payload
                conn.execute(
                    """
                    UPDATE analysis_queue_messages
                    SET attempt = ?, status = 'pending', payload = ?, worker_id = NULL, leased_until = NULL,
                        updated_at = ?
                    WHERE message_id = ?
                    """,
                    (
                        msg.attempt,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        _utcnow_iso(),
                        message_id,
                    ),
                )
                conn.commit()
                return msg

    def _list(self, *, queue_name: str, status: str) -> list[QueueMessage]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT message_id, queue_name, payload, attempt, worker_id, leased_until
                    FROM analysis_queue_messages
                    WHERE queue_name = ? AND status = ?
                    ORDER BY created_at ASC, message_id ASC
                    """,
                    (queue_name, status),
                ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                return self._count(conn, queue_name=queue_name, status="pending")

    def pending_messages(self, *, queue_name: str) -> list[QueueMessage]:
        return self._list(queue_name=queue_name, status="pending")

    def inflight_messages(self, *, queue_name: str) -> list[QueueMessage]:
        return self._list(queue_name=queue_name, status="inflight")

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM analysis_queue_messages")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for ANALYSIS_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue: a pending list, an in-flight set and one JSON blob per message.

    Removal from the in-flight set is the claim; whoever removes a message id
    first gets to ack or requeue it.
    """

    durable = True

    def __init__(self, *, dsn: str, namespace: str = "compliance", max_depth: int = 0, client: Any = None) -> None:
        self.max_depth = max(0, int(max_depth))
        self._namespace = namespace.strip() or "compliance"
        self._lock = threading.RLock()
        if client is not None:
            self._client = client
        else:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis queue backend")
            redis = _import_redis()
            self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            worker_id=data.get("worker_id"),
            leased_until=data.get("leased_until"),
        )

    def enqueue(self, *, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        with self._lock:
            pending_key = self._pending_key(queue_name)
            if self.max_depth and int(self._client.llen(pending_key)) >= self.max_depth:
                raise QueueFullError(queue_name=queue_name, max_depth=self.max_depth)
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                payload=payload,
                attempt=int(payload.get("attempt", 0)),
            )
            self._save_msg(
                msg.message_id,
                {
                    "queue_name": msg.queue_name,
                    "payload": msg.payload,
                    "attempt": msg.attempt,
                    "status": "pending",
                },
            )
            self._client.rpush(pending_key, msg.message_id)
            return msg

    def dequeue(self, *, queue_name: str, worker_id: str = "", lease_s: float = 60.0) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(queue_name)
            while True:
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id)
                if data is None:
                    continue
                data["status"] = "inflight"
                data["worker_id"] = worker_id
                data["leased_until"] = _lease_until_iso(lease_s)
                self._save_msg(message_id, data)
                self._client.sadd(self._inflight_key(queue_name), message_id)
                return self._to_message(message_id, data)

    def renew(self, *, message_id: str, worker_id: str, lease_s: float) -> bool:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight" or data.get("worker_id") != worker_id:
                return False
            data["leased_until"] = _lease_until_iso(lease_s)
            self._save_msg(message_id, data)
            return True

    def ack(self, *, message_id: str, worker_id: str | None = None) -> None:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight" or not _owned_by(data.get("worker_id"), worker_id):
                return
            if not self._client.srem(self._inflight_key(str(data.get("queue_name", ""))), message_id):
                return
            self._client.delete(self._msg_key(message_id))

    def nack(
        self,
        *,
        message_id: str,
        payload: dict[str, Any] | None = None,
        expired_only: bool = False,
    ) -> QueueMessage | None:
        """Return an in-flight message to the head of its queue."""
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight":
                return None
            if expired_only and not self._to_message(message_id, data).lease_expired():
                return None
            queue_name = str(data.get("queue_name", ""))
            if not self._client.srem(self._inflight_key(queue_name), message_id):
                return None
            data["attempt"] = int(data.get("attempt", 0)) + 1
            data["status"] = "pending"
            data.pop("worker_id", None)
            data.pop("leased_until", None)
            if payload is not None:
                data["payload"] = payload
            self._save_msg(message_id, data)
            self._client.lpush(self._pending_key(queue_name), message_id)
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name)))

    def pending_messages(self, *, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            messages = []
            for message_id in self._client.lrange(self._pending_key(queue_name), 0, -1):
                data = self._load_msg(message_id)
                if data is not None:
                    messages.append(self._to_message(message_id, data))
            return messages

    def inflight_messages(self, *, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            messages = []
            for message_id in sorted(self._client.smembers(self._inflight_key(queue_name))):
                data = self._load_msg(message_id)
                if data is not None:
                    messages.append(self._to_message(message_id, data))
            return messages

    def reset(self) -> None:
        with self._lock:
            for key in self._client.keys(f"{self._namespace}:*"):
                self._client.delete(key)


class AnalysisRequestQueue:
    """Bounded FIFO of analysis requests with the overflow policy applied on put.

    Messages handed out by ``get`` are leased to the calling worker for
    ``lease_s`` seconds; the worker keeps the lease alive with ``renew``.
    """

    def __init__(
        self,
        backend: Any,
        *,
        queue_name: str = "analysis",
        overflow: str = "reject",
        block_timeout_s: float = 5.0,
        poll_interval_s: float = 0.05,
        lease_s: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.queue_name = queue_name
        self.overflow = overflow
        self.block_timeout_s = max(0.0, float(block_timeout_s))
        self.poll_interval_s = max(0.001, float(poll_interval_s))
        self.lease_s = max(0.0, float(lease_s))
        self._sleep = sleep

    @property
    def max_depth(self) -> int:
        return int(getattr(self.backend, "max_depth", 0))

    @property
    def durable(self) -> bool:
        return bool(getattr(self.backend, "durable", False))

    def put(self, request: AnalysisRequest, *, may_block: bool = False) -> QueueMessage:
        """Enqueue or raise QueueFullError.

        Blocking happens only when the caller may block and the policy is "block".
        """
        payload = request.to_payload()
        if not may_block or self.overflow != "block":
            return self.backend.enqueue(queue_name=self.queue_name, payload=payload)
        deadline = time.monotonic() + self.block_timeout_s
        while True:
            try:
                return self.backend.enqueue(queue_name=self.queue_name, payload=payload)
            except QueueFullError:
                if time.monotonic() >= deadline:
                    raise
            self._sleep(self.poll_interval_s)

    def get(self, *, worker_id: str = "") -> QueueMessage | None:
        return self.backend.dequeue(queue_name=self.queue_name, worker_id=worker_id, lease_s=self.lease_s)

    def renew(self, message: QueueMessage) -> bool:
        return self.backend.renew(
            message_id=message.message_id,
            worker_id=str(message.worker_id or ""),
            lease_s=self.lease_s,
        )

    def ack(self, message: QueueMessage) -> None:
        self.backend.ack(message_id=message.message_id, worker_id=message.worker_id)

    def requeue(
        self,
        message: QueueMessage,
        *,
        payload: dict[str, Any] | None = None,
        expired_only: bool = False,
    ) -> QueueMessage | None:
        return self.backend.nack(message_id=message.message_id, payload=payload, expired_only=expired_only)

    def depth(self) -> int:
        return self.backend.pending_count(queue_name=self.queue_name)

    def pending_messages(self) -> list[QueueMessage]:
        return self.backend.pending_messages(queue_name=self.queue_name)

    def inflight_messages(self) -> list[QueueMessage]:
        return self.backend.inflight_messages(queue_name=self.queue_name)

    def reset(self) -> None:
        self.backend.reset()


def create_queue_backend_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("ANALYSIS_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    max_depth = _env_int(env, "ANALYSIS_QUEUE_MAX_DEPTH", default=1000)
    if backend == "memory":
        return InMemoryQueueBackend(max_depth=max_depth)
    if backend == "sqlite":
        db_path = env.get("ANALYSIS_QUEUE_SQLITE_PATH", ".runtime/analysis_queue.sqlite3")
        return SqliteQueueBackend(db_path, max_depth=max_depth)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when ANALYSIS_QUEUE_BACKEND=redis")
        namespace = env.get("ANALYSIS_QUEUE_KEY_PREFIX", "compliance")
        return RedisQueueBackend(dsn=dsn, namespace=namespace, max_depth=max_depth)
    raise RuntimeError(f"unsupported queue backend: {backend}")
