from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from compliance.db.postgres import PostgresTxRunner
from compliance.domain import EntityRef
from compliance.errors import ApiError, PersistenceError
from compliance.repositories import (
    InMemoryAnalysisResultsRepository,
    PostgresAnalysisResultsRepository,
    SqliteAnalysisResultsRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_PENDING = "Pending"
STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class ResultStore:
    """State machine over analysis result records.

    Records move Pending -> Completed | Failed exactly once. Repository
    failures surface as PersistenceError so the worker can retry them.
    """

    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        STATUS_PENDING: {STATUS_COMPLETED, STATUS_FAILED},
        STATUS_COMPLETED: set(),
        STATUS_FAILED: set(),
    }

    def __init__(self, repository: Any) -> None:
        self.repository = repository
        self._lock = threading.RLock()

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except ApiError:
            raise
        except Exception as exc:
            logger.warning("result_store_failure operation=%s error=%s", operation, type(exc).__name__)
            raise PersistenceError(operation=operation, message=f"{type(exc).__name__}: {exc}") from exc

    def _require(self, result_id: str) -> dict[str, Any]:
        record = self._call("get", lambda: self.repository.get(result_id=result_id))
        if record is None:
            raise ApiError(
                code="ANALYSIS_RESULT_NOT_FOUND",
                message=f"analysis result not found: {result_id}",
                error_class="not_found",
                retryable=False,
                http_status=404,
            )
        return record

    @staticmethod
    def _transition_error(current: str, new_status: str) -> ApiError:
        return ApiError(
            code="ANALYSIS_STATE_TRANSITION_INVALID",
            message=f"invalid transition: {current} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )

    def _check_transition(self, record: dict[str, Any], new_status: str) -> None:
        current = str(record.get("status", ""))
        if new_status not in self.ALLOWED_TRANSITIONS.get(current, set()):
            raise self._transition_error(current, new_status)

    def _commit_transition(self, record: dict[str, Any], *, previous_status: str) -> dict[str, Any]:
        """Write a transition only if no other writer moved the record on in the meantime."""
        updated = self._call(
            "update",
            lambda: self.repository.update(record=record, expected_status=previous_status),
        )
        if updated is None:
            current = self._require(str(record["result_id"]))
            raise self._transition_error(str(current.get("status", "")), str(record["status"]))
        return updated

    def create_pending(
        self,
        *,
        result_id: str,
        entity_ref: EntityRef,
        request_data: dict[str, Any],
        attempt_count: int = 0,
    ) -> dict[str, Any]:
        """Create the Pending record, or return the existing one for the same result_id."""
        with self._lock:
            existing = self._call("get", lambda: self.repository.get(result_id=result_id))
            if existing is not None:
                return existing
            pending = self._call(
                "find_pending",
                lambda: self.repository.find_pending(
                    entity_type=entity_ref.entity_type,
                    entity_id=entity_ref.entity_id,
                ),
            )
            if pending is not None:
                raise ApiError(
                    code="ANALYSIS_ALREADY_PENDING",
                    message=f"analysis {pending['result_id']} is already pending for {entity_ref.key}",
                    error_class="business_rule",
                    retryable=True,
                    http_status=409,
                )
            now = _utcnow_iso()
            record = {
                "result_id": result_id,
                "entity_type": entity_ref.entity_type,
                "entity_id": entity_ref.entity_id,
                "analysis_date": now,
                "status": STATUS_PENDING,
                "request_data": dict(request_data),
                "response_data": None,
                "analysis_result": None,
                "non_compliances": [],
                "error_code": None,
                "error_message": None,
                "attempt_count": int(attempt_count),
                "created_at": now,
                "updated_at": now,
            }
            return self._call("insert", lambda: self.repository.insert(record=record))

    def mark_completed(
        self,
        *,
        result_id: str,
        response_data: dict[str, Any],
        analysis_result: dict[str, Any],
        non_compliances: list[dict[str, Any]],
        attempt_count: int,
    ) -> dict[str, Any]:
        with self._lock:
            record = self._require(result_id)
            self._check_transition(record, STATUS_COMPLETED)
            record.update(
                {
                    "status": STATUS_COMPLETED,
                    "response_data": response_data,
                    "analysis_result": analysis_result,
                    "non_compliances": list(non_compliances),
                    "attempt_count": int(attempt_count),
                    "updated_at": _utcnow_iso(),
                }
            )
            return self._commit_transition(record, previous_status=STATUS_PENDING)

    def mark_failed(
        self,
        *,
        result_id: str,
        error_code: str,
        error_message: str,
        attempt_count: int | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            record = self._require(result_id)
            self._check_transition(record, STATUS_FAILED)
            record.update(
                {
                    "status": STATUS_FAILED,
                    "error_code": error_code,
                    "error_message": error_message.strip() or error_code or "analysis failed",
                    "updated_at": _utcnow_iso(),
                }
            )
            if attempt_count is not None:
                record["attempt_count"] = int(attempt_count)
            return self._commit_transition(record, previous_status=STATUS_PENDING)

    def get(self, result_id: str) -> dict[str, Any] | None:
        return self._call("get", lambda: self.repository.get(result_id=result_id))

    def find_pending(self, entity_ref: EntityRef) -> dict[str, Any] | None:
        return self._call(
            "find_pending",
            lambda: self.repository.find_pending(
                entity_type=entity_ref.entity_type,
                entity_id=entity_ref.entity_id,
            ),
        )

    def latest_for_entity(self, entity_ref: EntityRef) -> dict[str, Any] | None:
        return self._call(
            "latest_for_entity",
            lambda: self.repository.latest_for_entity(
                entity_type=entity_ref.entity_type,
                entity_id=entity_ref.entity_id,
            ),
        )

    def list_pending(self) -> list[dict[str, Any]]:
        return self._call("list_by_status", lambda: self.repository.list_by_status(status=STATUS_PENDING))

    def reset(self) -> None:
        with self._lock:
            self.repository.reset()


def create_result_store_from_env(environ: Mapping[str, str] | None = None) -> ResultStore:
    env = os.environ if environ is None else environ
    backend = env.get("ANALYSIS_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return ResultStore(InMemoryAnalysisResultsRepository())
    if backend == "sqlite":
        db_path = env.get("ANALYSIS_STORE_SQLITE_PATH", ".runtime/analysis_results.sqlite3")
        return ResultStore(SqliteAnalysisResultsRepository(db_path))
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when ANALYSIS_STORE_BACKEND=postgres")
        repository = PostgresAnalysisResultsRepository(tx_runner=PostgresTxRunner(dsn))
        repository.ensure_schema()
        return ResultStore(repository)
    raise RuntimeError(f"unsupported store backend: {backend}")
