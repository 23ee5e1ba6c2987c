from __future__ import annotations

import pytest

from compliance.domain import AnalysisMode, AnalysisRequest, DocumentPayload, EntityKind, EntityRef
from compliance.errors import ApiError


@pytest.mark.parametrize(
    "raw",
    ["MaterialDelivery", "material-delivery", "material_deliveries", "MATERIALDELIVERY"],
)
def test_entity_type_aliases_resolve_to_material_delivery(raw):
    ref = EntityRef.parse(raw, "12")
    assert ref.kind is EntityKind.MATERIAL_DELIVERY
    assert ref.entity_id == 12
    assert ref.key == "MaterialDelivery:12"


def test_work_journal_aliases_resolve():
    assert EntityRef.parse("work-journal", 3).kind is EntityKind.WORK_JOURNAL_ENTRY
    assert EntityRef.parse("WorkJournalEntry", 3) == EntityRef.parse("work_journal_entries", "3")


def test_unknown_entity_type_is_rejected():
    with pytest.raises(ApiError) as exc_info:
        EntityRef.parse("Contract", 1)
    assert exc_info.value.code == "ENTITY_TYPE_UNSUPPORTED"
    assert exc_info.value.http_status == 400


@pytest.mark.parametrize("raw_id", [0, -4, "abc", "1.5", True, None])
def test_invalid_entity_ids_are_rejected(raw_id):
    with pytest.raises(ApiError) as exc_info:
        EntityRef.parse("MaterialDelivery", raw_id)
    assert exc_info.value.code == "ENTITY_ID_INVALID"


def test_allowed_extensions_depend_on_entity_kind():
    delivery = EntityRef.parse("MaterialDelivery", 1)
    journal = EntityRef.parse("WorkJournalEntry", 1)
    assert delivery.allows_extension("cert.PDF")
    assert delivery.allows_extension("scan.docx")
    assert not delivery.allows_extension("photo.gif")
    assert journal.allows_extension("photo.gif")
    assert not journal.allows_extension("cert.pdf")


def test_document_metadata_never_contains_raw_bytes():
    doc = DocumentPayload(filename="cert.pdf", content=b"%PDF-1.4", content_type="application/pdf")
    meta = doc.metadata()
    assert meta["size"] == 8
    assert len(meta["sha256"]) == 64
    assert b"%PDF-1.4" not in repr(meta).encode()
    assert "content" not in meta


def test_analysis_request_survives_queue_payload():
    ref = EntityRef.parse("MaterialDelivery", 5)
    request = AnalysisRequest(
        result_id="ar_abc",
        entity_ref=ref,
        document=DocumentPayload(filename="cert.pdf", content=b"\x00\x01binary", content_type="application/pdf"),
        mode=AnalysisMode.WAIT,
    )
    payload = request.to_payload()
    assert "content_b64" in payload["document"]

    restored = AnalysisRequest.from_payload(payload)
    assert restored.result_id == "ar_abc"
    assert restored.entity_ref == ref
    assert restored.document.content == b"\x00\x01binary"
    assert restored.mode is AnalysisMode.WAIT
    assert restored.submitted_at == request.submitted_at
