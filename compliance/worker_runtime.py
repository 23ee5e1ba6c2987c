from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, fields
from typing import Any, TypeVar

from compliance.config import AnalysisSettings
from compliance.domain import AnalysisRequest, new_result_id
from compliance.errors import ApiError, PersistenceError
from compliance.idempotency import IdempotencyGuard
from compliance.provider_client import ProviderClient, RetryPolicy, call_with_retry
from compliance.queue_backend import AnalysisRequestQueue, QueueMessage
from compliance.result_store import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, TERMINAL_STATUSES, ResultStore, _utcnow_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSITION_INVALID = "ANALYSIS_STATE_TRANSITION_INVALID"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


@dataclass
class WorkerRunStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    persist_failures: int = 0
    internal_errors: int = 0
    reconciled: int = 0
    leases_lost: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: int(getattr(self, f.name)) for f in fields(self)}


class AnalysisWorker:
    """Drains the analysis queue and drives each request to a terminal record.

    Every dequeued message ends the same way regardless of what failed in
    between: the guard reservation is released, waiters are resolved and the
    message is acked.

    Several workers, in this process or others, may share one durable queue.
    Each holds its messages under a lease that a heartbeat thread renews, and
    reconciliation only touches messages whose lease ran out.
    """

    def __init__(
        self,
        *,
        store: ResultStore,
        queue: AnalysisRequestQueue,
        guard: IdempotencyGuard,
        provider: ProviderClient,
        settings: AnalysisSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.guard = guard
        self.provider = provider
        self.settings = settings or AnalysisSettings()
        self.worker_id = worker_id or default_worker_id()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self._sleep = sleep
        self._provider_slots = threading.BoundedSemaphore(max(1, self.settings.provider_max_inflight))
        self._stats = WorkerRunStats()
        self._stats_lock = threading.Lock()
        self._held: dict[str, QueueMessage] = {}
        self._held_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._heartbeat_stop = threading.Event()
        self._heartbeat: threading.Thread | None = None
        self._threads: list[threading.Thread] = []

    def _count(self, name: str, run_stats: WorkerRunStats | None = None, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)
        if run_stats is not None:
            setattr(run_stats, name, getattr(run_stats, name) + amount)

    def _persist(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = max(1, self.settings.persist_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except PersistenceError:
                if attempt >= attempts:
                    raise
                delay_ms = self.settings.persist_backoff_ms * attempt
                logger.warning(
                    "result_store_write_retry operation=%s attempt=%s retry_in_ms=%s",
                    operation,
                    attempt,
                    delay_ms,
                )
                self._sleep(delay_ms / 1000.0)
        raise AssertionError("unreachable")

    @staticmethod
    def _unrecorded(
        request: AnalysisRequest,
        *,
        error_code: str,
        error_message: str,
        base: dict[str, Any] | None = None,
        attempt_count: int = 0,
    ) -> dict[str, Any]:
        """In-memory Failed record handed to waiters when nothing could be stored."""
        now = _utcnow_iso()
        record = dict(base) if base is not None else {
            "result_id": request.result_id,
            **request.entity_ref.as_dict(),
            "analysis_date": now,
            "request_data": None,
            "response_data": None,
            "analysis_result": None,
            "non_compliances": [],
            "created_at": now,
        }
        record.update(
            {
                "status": STATUS_FAILED,
                "error_code": error_code,
                "error_message": error_message,
                "attempt_count": attempt_count,
                "updated_at": now,
            }
        )
        return record

    def _record_failure(
        self,
        request: AnalysisRequest,
        *,
        error_code: str,
        error_message: str,
        attempt_count: int,
        pending: dict[str, Any] | None,
        run_stats: WorkerRunStats | None,
    ) -> dict[str, Any]:
        try:
            return self._persist(
                "mark_failed",
                lambda: self.store.mark_failed(
                    result_id=request.result_id,
                    error_code=error_code,
                    error_message=error_message,
                    attempt_count=attempt_count,
                ),
            )
        except ApiError as exc:
            if exc.code == TRANSITION_INVALID:
                current = self.store.get(request.result_id)
                if current is not None:
                    return current
            raise
        except PersistenceError:
            return self._escalate(request, pending=pending, attempt_count=attempt_count, run_stats=run_stats)

    def _escalate(
        self,
        request: AnalysisRequest,
        *,
        pending: dict[str, Any] | None,
        attempt_count: int,
        run_stats: WorkerRunStats | None,
    ) -> dict[str, Any]:
        self._count("persist_failures", run_stats)
        logger.error("analysis_result_not_recorded result_id=%s", request.result_id)
        message = "analysis finished but the result could not be stored"
        if pending is not None:
            try:
                return self.store.mark_failed(
                    result_id=request.result_id,
                    error_code="RESULT_NOT_RECORDED",
                    error_message=message,
                    attempt_count=attempt_count,
                )
            except (ApiError, PersistenceError):
                logger.error("analysis_failure_not_recorded result_id=%s", request.result_id)
        return self._unrecorded(
            request,
            error_code="RESULT_NOT_RECORDED",
            error_message=message,
            base=pending,
            attempt_count=attempt_count,
        )

    def _analyze(self, request: AnalysisRequest, run_stats: WorkerRunStats | None) -> dict[str, Any]:
        try:
            pending = self._persist(
                "create_pending",
                lambda: self.store.create_pending(
                    result_id=request.result_id,
                    entity_ref=request.entity_ref,
                    request_data=self.provider.describe_request(request.document),
                ),
            )
        except PersistenceError:
            return self._escalate(request, pending=None, attempt_count=0, run_stats=run_stats)
        except ApiError as exc:
            logger.warning("analysis_not_started result_id=%s code=%s", request.result_id, exc.code)
            return self._unrecorded(request, error_code=exc.code, error_message=exc.message)

        if pending.get("status") != STATUS_PENDING:
            # Redelivered after the terminal write; only the ack was lost.
            return pending

        with self._provider_slots:
            outcome = call_with_retry(
                self.provider,
                request.document,
                self.retry_policy,
                seed=request.result_id,
                sleep=self._sleep,
            )

        if outcome.response is None:
            error = outcome.error
            return self._record_failure(
                request,
                error_code=error.code if error is not None else "PROVIDER_UNEXPECTED_ERROR",
                error_message=error.message if error is not None else "provider returned no response",
                attempt_count=outcome.attempts,
                pending=pending,
                run_stats=run_stats,
            )

        response = outcome.response
        try:
            return self._persist(
                "mark_completed",
                lambda: self.store.mark_completed(
                    result_id=request.result_id,
                    response_data=response.response_data,
                    analysis_result=response.verdict.analysis_result(),
                    non_compliances=response.verdict.non_compliance_items(),
                    attempt_count=outcome.attempts,
                ),
            )
        except PersistenceError:
            return self._escalate(request, pending=pending, attempt_count=outcome.attempts, run_stats=run_stats)
        except ApiError as exc:
            if exc.code != TRANSITION_INVALID:
                raise
            # Reclaimed after the lease lapsed; the record was closed elsewhere.
            current = self.store.get(request.result_id)
            if current is None:
                raise
            logger.warning("analysis_result_superseded result_id=%s status=%s", request.result_id, current.get("status"))
            return current

    def _finish(self, request: AnalysisRequest, record: dict[str, Any], run_stats: WorkerRunStats | None) -> None:
        entry = self.guard.release(request.entity_ref, request.result_id)
        if entry is not None:
            entry.resolve(record)
        status = record.get("status")
        if status == STATUS_COMPLETED:
            self._count("completed", run_stats)
            logger.info(
                "analysis_completed result_id=%s entity=%s attempts=%s",
                request.result_id,
                request.entity_ref.key,
                record.get("attempt_count"),
            )
        else:
            self._count("failed", run_stats)
            logger.warning(
                "analysis_failed result_id=%s entity=%s code=%s",
                request.result_id,
                request.entity_ref.key,
                record.get("error_code"),
            )

    def process_message(self, message: QueueMessage, *, run_stats: WorkerRunStats | None = None) -> dict[str, Any] | None:
        self._count("processed", run_stats)
        try:
            request = AnalysisRequest.from_payload(message.payload)
        except (KeyError, TypeError, ValueError, ApiError):
            logger.exception("analysis_message_invalid message_id=%s", message.message_id)
            self._count("failed", run_stats)
            self.queue.ack(message)
            return None

        with self._held_lock:
            self._held[message.message_id] = message
        record: dict[str, Any] | None = None
        try:
            record = self._analyze(request, run_stats)
        except Exception as exc:
            logger.exception("analysis_worker_internal_error result_id=%s", request.result_id)
            self._count("internal_errors", run_stats)
            record = self._internal_failure(request, exc)
        finally:
            if record is None:
                record = self._unrecorded(
                    request,
                    error_code="WORKER_INTERNAL_ERROR",
                    error_message="worker stopped before the analysis finished",
                )
            self._finish(request, record, run_stats)
            self.queue.ack(message)
            with self._held_lock:
                self._held.pop(message.message_id, None)
        return record

    def _internal_failure(self, request: AnalysisRequest, exc: Exception) -> dict[str, Any]:
        message = f"{type(exc).__name__}: {exc}"
        try:
            current = self.store.get(request.result_id)
            if current is not None and current.get("status") == STATUS_PENDING:
                return self.store.mark_failed(
                    result_id=request.result_id,
                    error_code="WORKER_INTERNAL_ERROR",
                    error_message=message,
                )
            if current is not None:
                return current
        except (ApiError, PersistenceError):
            logger.error("analysis_failure_not_recorded result_id=%s", request.result_id)
        return self._unrecorded(request, error_code="WORKER_INTERNAL_ERROR", error_message=message)

    def renew_leases(self) -> int:
        """Extend the lease on every message this worker is processing; returns how many were kept."""
        with self._held_lock:
            held = list(self._held.values())
        kept = 0
        for message in held:
            try:
                renewed = self.queue.renew(message)
            except Exception:
                logger.exception("analysis_lease_renew_failed message_id=%s", message.message_id)
                continue
            if renewed:
                kept += 1
                continue
            with self._held_lock:
                still_held = self._held.pop(message.message_id, None) is not None
            if still_held:
                self._count("leases_lost")
                logger.warning("analysis_lease_lost message_id=%s worker_id=%s", message.message_id, self.worker_id)
        return kept

    def _heartbeat_loop(self) -> None:
        interval_s = max(0.05, self.queue.lease_s / 3.0)
        reconcile_every = self.settings.reconcile_interval_s
        next_reconcile = time.monotonic() + reconcile_every
        while not self._heartbeat_stop.wait(interval_s):
            self.renew_leases()
            if reconcile_every > 0 and time.monotonic() >= next_reconcile:
                next_reconcile = time.monotonic() + reconcile_every
                try:
                    self.reconcile()
                except Exception:
                    logger.exception("analysis_reconcile_failed worker_id=%s", self.worker_id)

    def _start_heartbeat(self) -> None:
        if self._heartbeat is not None and self._heartbeat.is_alive():
            return
        self._heartbeat_stop.clear()
        self._heartbeat = threading.Thread(target=self._heartbeat_loop, name="analysis-lease-heartbeat", daemon=True)
        self._heartbeat.start()

    def _stop_heartbeat(self, timeout_s: float = 5.0) -> None:
        self._heartbeat_stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=timeout_s)
        self._heartbeat = None

    def run_once(self, *, max_messages: int | None = None) -> dict[str, int]:
        """Process queued messages on the calling thread until the queue is empty."""
        run_stats = WorkerRunStats()
        while max_messages is None or run_stats.processed < max_messages:
            message = self.queue.get(worker_id=self.worker_id)
            if message is None:
                break
            self.process_message(message, run_stats=run_stats)
        return run_stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        self._start_heartbeat()
        try:
            while not self._stop_event.is_set():
                current = self.run_once(max_messages=self.settings.worker_concurrency * 10)
                for name, value in current.items():
                    setattr(aggregate, name, getattr(aggregate, name) + value)
                iterations += 1
                if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                    break
                if current["processed"] == 0:
                    self._stop_event.wait(self.settings.worker_poll_interval_ms / 1000.0)
        finally:
            self._stop_heartbeat()
        return aggregate.as_dict()

    def _loop(self) -> None:
        poll_s = self.settings.worker_poll_interval_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                message = self.queue.get(worker_id=self.worker_id)
            except Exception:
                logger.exception("analysis_queue_read_failed queue=%s", self.queue.queue_name)
                self._stop_event.wait(poll_s)
                continue
            if message is None:
                self._stop_event.wait(poll_s)
                continue
            try:
                self.process_message(message)
            except Exception:
                logger.exception("analysis_message_unhandled message_id=%s", message.message_id)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        count = max(1, self.settings.worker_concurrency)
        self._threads = [
            threading.Thread(target=self._loop, name=f"analysis-worker-{idx}", daemon=True)
            for idx in range(count)
        ]
        for thread in self._threads:
            thread.start()
        self._start_heartbeat()
        logger.info("analysis_worker_started threads=%s provider=%s worker_id=%s", count, self.provider.name, self.worker_id)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout_s)
        self._threads = []
        self._stop_heartbeat(timeout_s)
        logger.info("analysis_worker_stopped worker_id=%s", self.worker_id)

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            counters = self._stats.as_dict()
        return {**counters, "running": self.is_running, "threads": len(self._threads), "worker_id": self.worker_id}

    def _close_interrupted(self, result_id: str, error_message: str) -> bool:
        try:
            self.store.mark_failed(result_id=result_id, error_code="ANALYSIS_INTERRUPTED", error_message=error_message)
        except ApiError as exc:
            if exc.code != TRANSITION_INVALID:
                raise
            return False
        return True

    def _reclaim(self, message: QueueMessage, summary: dict[str, int]) -> None:
        payload = dict(message.payload)
        result_id = str(payload.get("result_id") or "")
        existing = self.store.get(result_id) if result_id else None
        if existing is not None and existing.get("status") in TERMINAL_STATUSES:
            # Finished, only the ack was lost.
            self.queue.ack(message)
            return
        if existing is not None:
            # Close the old record first so the retry can open a new Pending for the entity.
            payload["result_id"] = new_result_id()
            if not self._close_interrupted(
                result_id,
                f"analysis interrupted before it finished; resubmitted as {payload['result_id']}",
            ):
                return
            summary["interrupted"] += 1
        if self.queue.requeue(message, payload=payload, expired_only=True) is None:
            logger.warning("analysis_reclaim_skipped message_id=%s reason=lease_renewed", message.message_id)
            return
        summary["requeued"] += 1
        logger.info("analysis_message_requeued message_id=%s result_id=%s", message.message_id, payload.get("result_id"))

    def reconcile(self) -> dict[str, int]:
        """Bring queue, guard and store back in line after a worker died.

        In-flight messages whose lease ran out are requeued; a Pending record
        they had already created is closed as interrupted and the retry gets a
        fresh result_id. Messages under a live lease are left to their owner.
        Queued requests re-take their reservations. Pending records that no
        queued or in-flight message refers to are closed as interrupted.
        """
        summary = {"requeued": 0, "reserved": 0, "interrupted": 0}

        # Read before the queue so a record created after this point cannot look orphaned.
        pending_records = self.store.list_pending()

        for message in self.queue.inflight_messages():
            if not message.lease_expired():
                continue
            self._reclaim(message, summary)

        queued: set[str] = set()
        for message in self.queue.pending_messages():
            try:
                request = AnalysisRequest.from_payload(message.payload)
            except (KeyError, TypeError, ValueError, ApiError):
                logger.warning("analysis_message_invalid message_id=%s", message.message_id)
                continue
            queued.add(request.result_id)
            reserved, _ = self.guard.try_reserve(request.entity_ref, result_id=request.result_id, mode=request.mode)
            if reserved:
                summary["reserved"] += 1

        inflight = {str(message.payload.get("result_id") or "") for message in self.queue.inflight_messages()}
        active = {entry["result_id"] for entry in self.guard.snapshot()}
        for record in pending_records:
            result_id = str(record["result_id"])
            if result_id in queued or result_id in inflight or result_id in active:
                continue
            if self._close_interrupted(result_id, "analysis interrupted before it finished"):
                summary["interrupted"] += 1

        self._count("reconciled", amount=summary["requeued"] + summary["interrupted"])
        logger.info(
            "analysis_reconciled worker_id=%s requeued=%s reserved=%s interrupted=%s",
            self.worker_id,
            summary["requeued"],
            summary["reserved"],
            summary["interrupted"],
        )
        return summary
