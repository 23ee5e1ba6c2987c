from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from compliance.config import AnalysisSettings
from compliance.document_storage import LocalDocumentStorage
from compliance.domain import AnalysisMode, AnalysisRequest, DocumentPayload, EntityRef, new_result_id
from compliance.errors import ApiError, PersistenceError, QueueFullError
from compliance.idempotency import IdempotencyGuard, InFlightAnalysis
from compliance.queue_backend import AnalysisRequestQueue
from compliance.result_store import STATUS_PENDING, TERMINAL_STATUSES, ResultStore

logger = logging.getLogger(__name__)

STATUS_DEFERRED = "deferred"


@dataclass
class SubmitOutcome:
    result_id: str
    status: str
    accepted: bool
    attached: bool = False
    timed_out: bool = False
    result: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "result_id": self.result_id,
            "status": self.status,
            "accepted": self.accepted,
            "attached": self.attached,
            "timed_out": self.timed_out,
            "result": self.result,
        }


def _queue_full_error(exc: QueueFullError) -> ApiError:
    return ApiError(
        code="ANALYSIS_QUEUE_FULL",
        message=f"analysis queue is full ({exc.max_depth} pending); retry later",
        error_class="transient",
        retryable=True,
        http_status=503,
    )


def _queue_unavailable_error() -> ApiError:
    return ApiError(
        code="ANALYSIS_QUEUE_UNAVAILABLE",
        message="analysis queue is unavailable; retry later",
        error_class="transient",
        retryable=True,
        http_status=503,
    )


class AnalysisCoordinator:
    """Entry point for both analysis triggers.

    Upload submits fire-and-forget, the explicit analyze call waits. Both go
    through the guard, so an entity never has two analyses in flight.
    """

    def __init__(
        self,
        *,
        store: ResultStore,
        guard: IdempotencyGuard,
        queue: AnalysisRequestQueue,
        documents: LocalDocumentStorage | None = None,
        settings: AnalysisSettings | None = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.queue = queue
        self.documents = documents
        self.settings = settings or AnalysisSettings()

    def submit(
        self,
        entity_ref: EntityRef,
        document: DocumentPayload,
        *,
        mode: AnalysisMode,
        timeout_s: float | None = None,
    ) -> SubmitOutcome:
        if not document.content:
            raise ApiError(
                code="ANALYSIS_DOCUMENT_EMPTY",
                message="document is empty",
                error_class="validation",
                retryable=False,
                http_status=400,
            )

        while True:
            result_id = new_result_id()
            reserved, entry = self.guard.try_reserve(entity_ref, result_id=result_id, mode=mode)
            if reserved:
                break
            if self._settle_stale(entry) is not None:
                continue
            if mode is AnalysisMode.FIRE_AND_FORGET:
                logger.info("analysis_attached entity=%s result_id=%s mode=%s", entity_ref.key, entry.result_id, mode.value)
                return SubmitOutcome(result_id=entry.result_id, status=STATUS_PENDING, accepted=True, attached=True)
            current = self.guard.attach(entity_ref)
            if current is not None:
                logger.info("analysis_attached entity=%s result_id=%s mode=%s", entity_ref.key, current.result_id, mode.value)
                return self._wait(current, timeout_s=timeout_s, attached=True)
            # Released between the two calls; reserve again.

        request = AnalysisRequest(result_id=result_id, entity_ref=entity_ref, document=document, mode=mode)
        try:
            self.queue.put(request, may_block=mode is AnalysisMode.WAIT)
        except QueueFullError as exc:
            error = _queue_full_error(exc)
            self._rollback(entry, error)
            logger.warning("analysis_rejected entity=%s mode=%s queue_depth_max=%s", entity_ref.key, mode.value, exc.max_depth)
            if mode is AnalysisMode.FIRE_AND_FORGET:
                return SubmitOutcome(result_id=result_id, status=STATUS_DEFERRED, accepted=False)
            raise error from exc
        except Exception as exc:
            error = _queue_unavailable_error()
            self._rollback(entry, error)
            logger.exception("analysis_enqueue_failed entity=%s mode=%s", entity_ref.key, mode.value)
            if mode is AnalysisMode.FIRE_AND_FORGET:
                return SubmitOutcome(result_id=result_id, status=STATUS_DEFERRED, accepted=False)
            raise error from exc

        logger.info("analysis_queued entity=%s result_id=%s mode=%s", entity_ref.key, result_id, mode.value)
        if mode is AnalysisMode.FIRE_AND_FORGET:
            return SubmitOutcome(result_id=result_id, status=STATUS_PENDING, accepted=True)
        return self._wait(entry, timeout_s=timeout_s, attached=False)

    def _rollback(self, entry: InFlightAnalysis, error: ApiError) -> None:
        """Undo a reservation the queue never accepted and tell anyone who attached meanwhile."""
        self.guard.release(entry.entity_ref, entry.result_id)
        entry.fail(error)

    def _settle_stale(self, entry: InFlightAnalysis) -> dict[str, Any] | None:
        """Release a reservation whose analysis another process already finished.

        Workers in other processes write the shared store but cannot reach this
        guard, so a terminal record there is the only signal that `entry` is done.
        """
        try:
            record = self.store.get(entry.result_id)
        except PersistenceError as exc:
            logger.warning("analysis_settle_skipped result_id=%s error=%s", entry.result_id, exc)
            return None
        if record is None or record.get("status") not in TERMINAL_STATUSES:
            return None
        self.guard.release(entry.entity_ref, entry.result_id)
        entry.resolve(record)
        logger.info("analysis_settled result_id=%s status=%s", entry.result_id, record["status"])
        return record

    def _wait(self, entry: InFlightAnalysis, *, timeout_s: float | None, attached: bool) -> SubmitOutcome:
        timeout = self.settings.wait_timeout_s if timeout_s is None else max(0.0, float(timeout_s))
        poll_s = max(0.01, self.settings.worker_poll_interval_ms / 1000.0)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                record = entry.future.result(timeout=max(0.0, min(poll_s, remaining)))
                break
            except TimeoutError:
                record = self._settle_stale(entry)
                if record is not None:
                    break
                if remaining <= poll_s:
                    logger.info("analysis_wait_timed_out result_id=%s timeout_s=%s", entry.result_id, timeout)
                    return SubmitOutcome(
                        result_id=entry.result_id,
                        status=STATUS_PENDING,
                        accepted=True,
                        attached=attached,
                        timed_out=True,
                    )
        return SubmitOutcome(
            result_id=str(record["result_id"]),
            status=str(record["status"]),
            accepted=True,
            attached=attached,
            result=record,
        )

    def upload_document(
        self,
        entity_ref: EntityRef,
        *,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> tuple[dict[str, Any], SubmitOutcome]:
        """Store an uploaded quality document and start its analysis."""
        if not entity_ref.allows_extension(filename):
            raise ApiError(
                code="DOC_TYPE_UNSUPPORTED",
                message=f"unsupported document type for {entity_ref.entity_type}: {filename}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if not content:
            raise ApiError(
                code="ANALYSIS_DOCUMENT_EMPTY",
                message="document is empty",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if self.documents is None:
            raise RuntimeError("document storage is not configured")
        stored = self.documents.put_document(
            entity_ref=entity_ref,
            filename=filename,
            content=content,
            content_type=content_type,
        )
        document = DocumentPayload(
            filename=filename,
            content=content,
            content_type=str(stored["content_type"]),
            storage_uri=str(stored["storage_uri"]),
        )
        return stored, self.submit_for_analysis(entity_ref, document)

    def submit_for_analysis(self, entity_ref: EntityRef, document: DocumentPayload) -> SubmitOutcome:
        return self.submit(entity_ref, document, mode=AnalysisMode.FIRE_AND_FORGET)

    def request_analysis(self, entity_ref: EntityRef, *, timeout_s: float | None = None) -> SubmitOutcome:
        document = self.documents.latest_document(entity_ref) if self.documents is not None else None
        if document is None:
            raise ApiError(
                code="ANALYSIS_NO_DOCUMENTS",
                message="No quality documents available for analysis",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return self.submit(entity_ref, document, mode=AnalysisMode.WAIT, timeout_s=timeout_s)

    def get_result(self, result_id: str) -> dict[str, Any]:
        record = self.store.get(result_id)
        if record is None:
            queued = self.guard.find(result_id)
            if queued is not None:
                # Accepted but not picked up by a worker yet.
                return {
                    "result_id": queued.result_id,
                    **queued.entity_ref.as_dict(),
                    "status": STATUS_PENDING,
                    "queued_at": queued.reserved_at,
                }
            raise ApiError(
                code="ANALYSIS_RESULT_NOT_FOUND",
                message=f"analysis result not found: {result_id}",
                error_class="not_found",
                retryable=False,
                http_status=404,
            )
        return record

    def latest_result(self, entity_ref: EntityRef) -> dict[str, Any] | None:
        return self.store.latest_for_entity(entity_ref)
