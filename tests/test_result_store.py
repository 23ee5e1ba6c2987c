from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from compliance.domain import EntityRef
from compliance.errors import ApiError, PersistenceError
from compliance.repositories import InMemoryAnalysisResultsRepository, SqliteAnalysisResultsRepository
from compliance.result_store import ResultStore, create_result_store_from_env


def _pending(store: ResultStore, ref: EntityRef, result_id: str) -> dict:
    return store.create_pending(result_id=result_id, entity_ref=ref, request_data={"document": {"filename": "a.pdf"}})


def test_create_pending_then_complete(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    record = _pending(store, delivery, "ar_1")
    assert record["status"] == "Pending"
    assert record["error_message"] is None
    assert record["non_compliances"] == []

    done = store.mark_completed(
        result_id="ar_1",
        response_data={"raw": True},
        analysis_result={"compliant": False, "summary": "stamp missing"},
        non_compliances=[{"issue": "stamp missing", "severity": "medium", "reference": "p1"}],
        attempt_count=2,
    )
    assert done["status"] == "Completed"
    assert done["attempt_count"] == 2
    assert store.get("ar_1")["non_compliances"][0]["issue"] == "stamp missing"
    assert store.get("ar_1")["request_data"] == {"document": {"filename": "a.pdf"}}


def test_second_pending_for_same_entity_is_refused(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    _pending(store, delivery, "ar_1")
    with pytest.raises(ApiError) as exc_info:
        _pending(store, delivery, "ar_2")
    assert exc_info.value.code == "ANALYSIS_ALREADY_PENDING"

    other = EntityRef.parse("WorkJournalEntry", delivery.entity_id)
    assert _pending(store, other, "ar_3")["status"] == "Pending"


def test_create_pending_is_idempotent_per_result_id(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    first = _pending(store, delivery, "ar_1")
    again = _pending(store, delivery, "ar_1")
    assert again["created_at"] == first["created_at"]


def test_terminal_records_never_transition_again(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    _pending(store, delivery, "ar_1")
    store.mark_failed(result_id="ar_1", error_code="PROVIDER_REQUEST_REJECTED", error_message="bad request")
    with pytest.raises(ApiError) as exc_info:
        store.mark_completed(
            result_id="ar_1",
            response_data={},
            analysis_result={"compliant": True, "summary": ""},
            non_compliances=[],
            attempt_count=1,
        )
    assert exc_info.value.code == "ANALYSIS_STATE_TRANSITION_INVALID"
    assert store.get("ar_1")["status"] == "Failed"


def test_failed_record_always_has_error_message(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    _pending(store, delivery, "ar_1")
    failed = store.mark_failed(result_id="ar_1", error_code="PROVIDER_TIMEOUT", error_message="  ")
    assert failed["error_message"] == "PROVIDER_TIMEOUT"


def test_unknown_result_cannot_be_marked(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    with pytest.raises(ApiError) as exc_info:
        store.mark_failed(result_id="ar_missing", error_code="X", error_message="y")
    assert exc_info.value.http_status == 404


def test_latest_for_entity_returns_newest(delivery):
    store = ResultStore(InMemoryAnalysisResultsRepository())
    _pending(store, delivery, "ar_1")
    store.mark_failed(result_id="ar_1", error_code="E", error_message="first")
    _pending(store, delivery, "ar_2")
    assert store.latest_for_entity(delivery)["result_id"] == "ar_2"
    assert store.latest_for_entity(EntityRef.parse("MaterialDelivery", 999)) is None


class BrokenRepository(InMemoryAnalysisResultsRepository):
    def insert(self, *, record):
        raise sqlite3.OperationalError("database is locked")


def test_repository_errors_surface_as_persistence_errors(delivery):
    store = ResultStore(BrokenRepository())
    with pytest.raises(PersistenceError) as exc_info:
        _pending(store, delivery, "ar_1")
    assert exc_info.value.operation == "insert"
    assert "database is locked" in exc_info.value.message


def test_sqlite_store_persists_between_instances(tmp_path: Path, delivery):
    db_path = tmp_path / "results.sqlite3"
    store = ResultStore(SqliteAnalysisResultsRepository(db_path))
    _pending(store, delivery, "ar_1")
    store.mark_completed(
        result_id="ar_1",
        response_data={"id": "resp"},
        analysis_result={"compliant": True, "summary": "fine"},
        non_compliances=[],
        attempt_count=1,
    )

    reopened = ResultStore(SqliteAnalysisResultsRepository(db_path))
    record = reopened.get("ar_1")
    assert record["status"] == "Completed"
    assert record["entity_id"] == delivery.entity_id
    assert record["analysis_result"] == {"compliant": True, "summary": "fine"}
    assert record["response_data"] == {"id": "resp"}
    assert reopened.list_pending() == []


def test_sqlite_partial_unique_index_allows_one_pending_per_entity(tmp_path: Path, delivery):
    repo = SqliteAnalysisResultsRepository(tmp_path / "results.sqlite3")
    base = {
        "entity_type": delivery.entity_type,
        "entity_id": delivery.entity_id,
        "analysis_date": "2026-01-01T00:00:00+00:00",
        "status": "Pending",
        "request_data": {},
        "response_data": None,
        "analysis_result": None,
        "non_compliances": [],
        "error_code": None,
        "error_message": None,
        "attempt_count": 0,
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }
    repo.insert(record={**base, "result_id": "ar_1"})
    with pytest.raises(sqlite3.IntegrityError):
        repo.insert(record={**base, "result_id": "ar_2"})
    repo.insert(record={**base, "result_id": "ar_3", "status": "Failed", "error_message": "x"})
    repo.insert(record={**base, "result_id": "ar_4", "status": "Failed", "error_message": "y"})
    assert [row["result_id"] for row in repo.list_by_status(status="Failed")] == ["ar_3", "ar_4"]


def test_store_factory_selects_sqlite(tmp_path: Path):
    store = create_result_store_from_env(
        {"ANALYSIS_STORE_BACKEND": "sqlite", "ANALYSIS_STORE_SQLITE_PATH": str(tmp_path / "r.sqlite3")}
    )
    assert isinstance(store.repository, SqliteAnalysisResultsRepository)


def test_store_factory_requires_postgres_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_result_store_from_env({"ANALYSIS_STORE_BACKEND": "postgres"})


def test_sqlite_update_applies_only_while_status_matches(tmp_path: Path, delivery):
    repo = SqliteAnalysisResultsRepository(tmp_path / "results.sqlite3")
    store = ResultStore(repo)
    pending = _pending(store, delivery, "ar_1")
    store.mark_failed(result_id="ar_1", error_code="ANALYSIS_INTERRUPTED", error_message="worker restarted")

    late_write = {**pending, "status": "Completed", "analysis_result": {"compliant": True, "summary": "ok"}}
    assert repo.update(record=late_write, expected_status="Pending") is None
    assert store.get("ar_1")["status"] == "Failed"
    with pytest.raises(KeyError):
        repo.update(record={**late_write, "result_id": "ar_missing"}, expected_status="Pending")


class LaggingReadRepository(InMemoryAnalysisResultsRepository):
    """Reads return the record as another process saw it before its terminal write."""

    stale: dict | None = None

    def get(self, *, result_id):
        if self.stale is not None and self.stale["result_id"] == result_id:
            return dict(self.stale)
        return super().get(result_id=result_id)


def test_terminal_write_loses_to_a_concurrent_writer(delivery):
    repo = LaggingReadRepository()
    store = ResultStore(repo)
    repo.stale = _pending(store, delivery, "ar_1")
    repo.update(record={**repo.stale, "status": "Failed", "error_message": "closed elsewhere"})

    with pytest.raises(ApiError) as exc_info:
        store.mark_completed(
            result_id="ar_1",
            response_data={},
            analysis_result={"compliant": True, "summary": ""},
            non_compliances=[],
            attempt_count=1,
        )
    assert exc_info.value.code == "ANALYSIS_STATE_TRANSITION_INVALID"
    repo.stale = None
    assert store.get("ar_1")["error_message"] == "closed elsewhere"
