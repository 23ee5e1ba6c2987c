from __future__ import annotations

import json
import os
import re
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path
from typing import Any

from compliance.domain import DocumentPayload, EntityRef


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "document"


def _parse_storage_uri(uri: str) -> str:
    prefix = "document://local/"
    if not uri.startswith(prefix):
        raise ValueError("invalid storage uri")
    key = uri[len(prefix) :]
    if not key or ".." in Path(key).parts:
        raise ValueError("invalid storage uri")
    return key


class LocalDocumentStorage:
    """Quality documents on the local filesystem, one folder per entity.

    Each file gets a sibling ``.meta.json`` with content type, hash and
    upload time; the newest upload is what an explicit analysis looks at.
    """

    backend_name = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _entity_dir(self, entity_ref: EntityRef) -> Path:
        return self._root / "entities" / entity_ref.entity_type / str(entity_ref.entity_id)

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")

    def _read_meta(self, meta_path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def put_document(
        self,
        *,
        entity_ref: EntityRef,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        document_id = f"doc_{uuid.uuid4().hex[:12]}"
        safe_filename = _clean_segment(filename)
        key = (
            f"entities/{entity_ref.entity_type}/{entity_ref.entity_id}/documents/{document_id}/{safe_filename}"
        )
        path = self._root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        meta = {
            "document_id": document_id,
            **entity_ref.as_dict(),
            "filename": filename,
            "content_type": content_type or "application/octet-stream",
            "size": len(content),
            "sha256": sha256(content).hexdigest(),
            "storage_uri": f"document://{self.backend_name}/{key}",
            "uploaded_at": _now_iso(),
        }
        self._meta_path(path).write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        return meta

    def get_object(self, *, storage_uri: str) -> bytes:
        path = self._root / _parse_storage_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def list_documents(self, entity_ref: EntityRef) -> list[dict[str, Any]]:
        base = self._entity_dir(entity_ref)
        if not base.exists():
            return []
        documents = []
        for meta_path in base.rglob("*.meta.json"):
            meta = self._read_meta(meta_path)
            if meta is not None:
                documents.append(meta)
        documents.sort(key=lambda item: (str(item.get("uploaded_at", "")), str(item.get("document_id", ""))))
        return documents

    def latest_document(self, entity_ref: EntityRef) -> DocumentPayload | None:
        documents = self.list_documents(entity_ref)
        if not documents:
            return None
        meta = documents[-1]
        storage_uri = str(meta["storage_uri"])
        return DocumentPayload(
            filename=str(meta.get("filename") or "document.bin"),
            content=self.get_object(storage_uri=storage_uri),
            content_type=str(meta.get("content_type") or "application/octet-stream"),
            storage_uri=storage_uri,
        )

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()


def create_document_storage_from_env(environ: Mapping[str, str] | None = None) -> LocalDocumentStorage:
    env = os.environ if environ is None else environ
    root = env.get("DOCUMENT_STORAGE_ROOT", "/tmp/compliance-documents").strip() or "/tmp/compliance-documents"
    return LocalDocumentStorage(root)
