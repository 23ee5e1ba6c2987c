from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from compliance.domain import AnalysisMode, DocumentPayload, EntityRef
from compliance.errors import ApiError, PermanentProviderError
from compliance.queue_backend import InMemoryQueueBackend


def _doc(content: bytes = b"%PDF-1.4 quality certificate") -> DocumentPayload:
    return DocumentPayload(filename="certificate.pdf", content=content, content_type="application/pdf")


def test_upload_then_explicit_analysis_shares_one_provider_call(make_runtime, scripted_provider, eventually, delivery):
    gate = threading.Event()
    provider = scripted_provider(gate=gate)
    runtime = make_runtime(provider=provider)
    runtime.worker.start()

    queued = runtime.coordinator.submit_for_analysis(delivery, _doc())
    assert eventually(lambda: provider.calls == 1)
    entry = runtime.guard.peek(delivery)

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(runtime.coordinator.submit, delivery, _doc(), mode=AnalysisMode.WAIT, timeout_s=5)
        assert eventually(lambda: entry.waiters == 1)
        gate.set()
        outcome = future.result(timeout=5)

    assert outcome.attached is True
    assert outcome.result_id == queued.result_id
    assert outcome.status == "Completed"
    assert outcome.result["analysis_result"]["compliant"] is True
    assert provider.calls == 1


def test_concurrent_waiters_receive_the_same_result(make_runtime, scripted_provider, eventually, delivery):
    gate = threading.Event()
    provider = scripted_provider(gate=gate)
    runtime = make_runtime(provider=provider)
    runtime.worker.start()

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(runtime.coordinator.submit, delivery, _doc(), mode=AnalysisMode.WAIT, timeout_s=5)
            for _ in range(2)
        ]
        assert eventually(lambda: provider.calls == 1)
        assert eventually(lambda: (runtime.guard.peek(delivery) is not None) and runtime.guard.peek(delivery).waiters == 1)
        gate.set()
        outcomes = [future.result(timeout=5) for future in futures]

    assert {outcome.result_id for outcome in outcomes} == {outcomes[0].result_id}
    assert sorted(outcome.attached for outcome in outcomes) == [False, True]
    assert all(outcome.status == "Completed" for outcome in outcomes)
    assert provider.calls == 1
    assert runtime.guard.peek(delivery) is None


def test_wait_timeout_returns_pending_and_analysis_keeps_running(make_runtime, delivery):
    runtime = make_runtime()
    outcome = runtime.coordinator.submit(delivery, _doc(), mode=AnalysisMode.WAIT, timeout_s=0)

    assert outcome.status == "Pending"
    assert outcome.timed_out is True
    assert outcome.accepted is True
    queued = runtime.coordinator.get_result(outcome.result_id)
    assert queued["status"] == "Pending"
    assert queued["entity_type"] == "MaterialDelivery"

    runtime.worker.run_once()
    assert runtime.coordinator.get_result(outcome.result_id)["status"] == "Completed"


def test_wait_returns_failed_record_instead_of_raising(make_runtime, scripted_provider, delivery):
    provider = scripted_provider([PermanentProviderError(code="PROVIDER_REQUEST_REJECTED", message="bad file")])
    runtime = make_runtime(provider=provider)
    runtime.worker.start()

    outcome = runtime.coordinator.submit(delivery, _doc(), mode=AnalysisMode.WAIT, timeout_s=5)
    assert outcome.status == "Failed"
    assert outcome.result["error_code"] == "PROVIDER_REQUEST_REJECTED"


def test_empty_document_is_rejected_before_reservation(make_runtime, delivery):
    runtime = make_runtime()
    with pytest.raises(ApiError) as exc:
        runtime.coordinator.submit_for_analysis(delivery, _doc(b""))
    assert exc.value.code == "ANALYSIS_DOCUMENT_EMPTY"
    assert runtime.guard.peek(delivery) is None
    assert runtime.queue.depth() == 0


def test_explicit_analysis_without_documents_creates_nothing(make_runtime, delivery):
    runtime = make_runtime()
    with pytest.raises(ApiError) as exc:
        runtime.coordinator.request_analysis(delivery)
    assert exc.value.code == "ANALYSIS_NO_DOCUMENTS"
    assert exc.value.message == "No quality documents available for analysis"
    assert exc.value.http_status == 400
    assert runtime.coordinator.latest_result(delivery) is None
    assert runtime.queue.depth() == 0


def test_fire_and_forget_is_deferred_when_queue_is_full(make_runtime, settings_factory):
    runtime = make_runtime(settings=settings_factory(queue_max_depth=1))
    first_ref = EntityRef.parse("MaterialDelivery", 1)
    second_ref = EntityRef.parse("MaterialDelivery", 2)

    first = runtime.coordinator.submit_for_analysis(first_ref, _doc())
    second = runtime.coordinator.submit_for_analysis(second_ref, _doc())

    assert first.accepted is True
    assert second.accepted is False
    assert second.status == "deferred"
    assert runtime.guard.peek(second_ref) is None
    assert runtime.queue.depth() == 1
    assert runtime.store.get(second.result_id) is None


def test_wait_is_rejected_when_queue_is_full(make_runtime, settings_factory):
    runtime = make_runtime(settings=settings_factory(queue_max_depth=1))
    runtime.coordinator.submit_for_analysis(EntityRef.parse("MaterialDelivery", 1), _doc())
    waiting_ref = EntityRef.parse("MaterialDelivery", 2)

    with pytest.raises(ApiError) as exc:
        runtime.coordinator.submit(waiting_ref, _doc(), mode=AnalysisMode.WAIT, timeout_s=1)
    assert exc.value.code == "ANALYSIS_QUEUE_FULL"
    assert exc.value.http_status == 503
    assert exc.value.retryable is True
    assert runtime.guard.peek(waiting_ref) is None


def test_block_policy_gives_up_after_block_timeout(make_runtime, settings_factory):
    runtime = make_runtime(
        settings=settings_factory(queue_max_depth=1, queue_overflow="block", queue_block_timeout_s=0.05)
    )
    runtime.coordinator.submit_for_analysis(EntityRef.parse("MaterialDelivery", 1), _doc())

    with pytest.raises(ApiError) as exc:
        runtime.coordinator.submit(EntityRef.parse("MaterialDelivery", 2), _doc(), mode=AnalysisMode.WAIT, timeout_s=1)
    assert exc.value.code == "ANALYSIS_QUEUE_FULL"


def test_second_upload_attaches_without_enqueueing(make_runtime, delivery):
    runtime = make_runtime()
    first = runtime.coordinator.submit_for_analysis(delivery, _doc())
    second = runtime.coordinator.submit_for_analysis(delivery, _doc(b"%PDF-1.4 another certificate"))

    assert second.attached is True
    assert second.result_id == first.result_id
    assert runtime.queue.depth() == 1


def test_entity_can_be_analyzed_again_after_completion(make_runtime, delivery):
    runtime = make_runtime()
    first = runtime.coordinator.submit_for_analysis(delivery, _doc())
    runtime.worker.run_once()
    second = runtime.coordinator.submit_for_analysis(delivery, _doc())
    runtime.worker.run_once()

    assert second.result_id != first.result_id
    assert second.attached is False
    latest = runtime.coordinator.latest_result(delivery)
    assert latest["result_id"] == second.result_id
    assert latest["status"] == "Completed"
    assert runtime.store.get(first.result_id)["status"] == "Completed"


def test_unknown_result_id_is_not_found(make_runtime):
    runtime = make_runtime()
    with pytest.raises(ApiError) as exc:
        runtime.coordinator.get_result("ar_missing")
    assert exc.value.code == "ANALYSIS_RESULT_NOT_FOUND"
    assert exc.value.http_status == 404


def test_upload_rejects_document_type_not_allowed_for_entity(make_runtime):
    runtime = make_runtime()
    journal = EntityRef.parse("WorkJournalEntry", 3)
    with pytest.raises(ApiError) as exc:
        runtime.coordinator.upload_document(journal, filename="report.pdf", content=b"%PDF", content_type="application/pdf")
    assert exc.value.code == "DOC_TYPE_UNSUPPORTED"
    assert runtime.documents.list_documents(journal) == []


def test_uploaded_document_is_used_by_explicit_analysis(make_runtime, delivery):
    runtime = make_runtime()
    stored, outcome = runtime.coordinator.upload_document(
        delivery,
        filename="certificate.pdf",
        content=b"%PDF-1.4 cert",
        content_type="application/pdf",
    )
    assert stored["storage_uri"].startswith("document://local/")
    assert outcome.status == "Pending"
    runtime.worker.run_once()

    runtime.worker.start()
    explicit = runtime.coordinator.request_analysis(delivery, timeout_s=5)
    assert explicit.status == "Completed"
    assert explicit.result_id != outcome.result_id
    assert explicit.result["request_data"]["document"]["sha256"] == stored["sha256"]


class UnreachableQueueBackend(InMemoryQueueBackend):
    def enqueue(self, *, queue_name, payload):
        raise ConnectionError("queue broker refused the connection")


def test_unreachable_queue_is_reported_as_unavailable(make_runtime, delivery):
    runtime = make_runtime(queue_backend=UnreachableQueueBackend())

    deferred = runtime.coordinator.submit_for_analysis(delivery, _doc())
    assert deferred.status == "deferred"
    assert deferred.accepted is False
    assert runtime.guard.peek(delivery) is None

    with pytest.raises(ApiError) as exc:
        runtime.coordinator.submit(delivery, _doc(), mode=AnalysisMode.WAIT, timeout_s=1)
    assert exc.value.code == "ANALYSIS_QUEUE_UNAVAILABLE"
    assert exc.value.http_status == 503
    assert exc.value.retryable is True
    assert runtime.guard.peek(delivery) is None
