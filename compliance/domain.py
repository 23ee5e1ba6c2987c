from __future__ import annotations

import base64
import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

from compliance.errors import ApiError


class EntityKind(str, Enum):
    MATERIAL_DELIVERY = "MaterialDelivery"
    WORK_JOURNAL_ENTRY = "WorkJournalEntry"


_KIND_ALIASES: dict[str, EntityKind] = {
    "materialdelivery": EntityKind.MATERIAL_DELIVERY,
    "materialdeliveries": EntityKind.MATERIAL_DELIVERY,
    "workjournalentry": EntityKind.WORK_JOURNAL_ENTRY,
    "workjournalentries": EntityKind.WORK_JOURNAL_ENTRY,
    "workjournal": EntityKind.WORK_JOURNAL_ENTRY,
}

# Quality certificates for deliveries, site photos for journal entries.
ALLOWED_DOCUMENT_EXTENSIONS: dict[EntityKind, frozenset[str]] = {
    EntityKind.MATERIAL_DELIVERY: frozenset({".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"}),
    EntityKind.WORK_JOURNAL_ENTRY: frozenset({".jpg", ".jpeg", ".png", ".gif"}),
}


def new_result_id() -> str:
    return f"ar_{uuid.uuid4().hex[:12]}"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class EntityRef:
    kind: EntityKind
    entity_id: int

    @classmethod
    def parse(cls, entity_type: str, entity_id: Any) -> "EntityRef":
        normalized = re.sub(r"[-_\s]+", "", str(entity_type or "")).lower()
        kind = _KIND_ALIASES.get(normalized)
        if kind is None:
            raise ApiError(
                code="ENTITY_TYPE_UNSUPPORTED",
                message=f"unsupported entity type: {entity_type}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        if isinstance(entity_id, bool):
            parsed_id = None
        elif isinstance(entity_id, int):
            parsed_id = entity_id
        elif isinstance(entity_id, str) and entity_id.strip().isdigit():
            parsed_id = int(entity_id.strip())
        else:
            parsed_id = None
        if parsed_id is None or parsed_id <= 0:
            raise ApiError(
                code="ENTITY_ID_INVALID",
                message=f"entity id must be a positive integer: {entity_id}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return cls(kind=kind, entity_id=parsed_id)

    @property
    def entity_type(self) -> str:
        return self.kind.value

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.entity_id}"

    def allows_extension(self, filename: str) -> bool:
        return PurePath(filename).suffix.lower() in ALLOWED_DOCUMENT_EXTENSIONS[self.kind]

    def as_dict(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type, "entity_id": self.entity_id}


@dataclass(frozen=True)
class DocumentPayload:
    filename: str
    content: bytes = field(repr=False)
    content_type: str = "application/octet-stream"
    storage_uri: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lower()

    def metadata(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
            "sha256": self.sha256,
            "storage_uri": self.storage_uri,
        }


class AnalysisMode(str, Enum):
    FIRE_AND_FORGET = "fire_and_forget"
    WAIT = "wait"


@dataclass
class AnalysisRequest:
    result_id: str
    entity_ref: EntityRef
    document: DocumentPayload
    mode: AnalysisMode
    submitted_at: str = field(default_factory=_utcnow_iso)
    attempt: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "result_id": self.result_id,
            "entity_type": self.entity_ref.entity_type,
            "entity_id": self.entity_ref.entity_id,
            "mode": self.mode.value,
            "submitted_at": self.submitted_at,
            "attempt": self.attempt,
            "document": {
                "filename": self.document.filename,
                "content_type": self.document.content_type,
                "storage_uri": self.document.storage_uri,
                "content_b64": base64.b64encode(self.document.content).decode("ascii"),
            },
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, attempt: int | None = None) -> "AnalysisRequest":
        doc = payload.get("document") or {}
        document = DocumentPayload(
            filename=str(doc.get("filename") or "document.bin"),
            content=base64.b64decode(str(doc.get("content_b64") or "")),
            content_type=str(doc.get("content_type") or "application/octet-stream"),
            storage_uri=doc.get("storage_uri"),
        )
        return cls(
            result_id=str(payload["result_id"]),
            entity_ref=EntityRef.parse(str(payload["entity_type"]), payload["entity_id"]),
            document=document,
            mode=AnalysisMode(str(payload.get("mode") or AnalysisMode.FIRE_AND_FORGET.value)),
            submitted_at=str(payload.get("submitted_at") or _utcnow_iso()),
            attempt=int(payload.get("attempt", 0)) if attempt is None else attempt,
        )
