from __future__ import annotations

import threading
import zlib
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from compliance.domain import AnalysisMode, EntityRef


@dataclass
class InFlightAnalysis:
    """One reserved analysis; `future` resolves to the terminal record."""

    entity_ref: EntityRef
    result_id: str
    mode: AnalysisMode
    reserved_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    future: Future = field(default_factory=Future, repr=False)
    waiters: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.entity_ref.as_dict(),
            "result_id": self.result_id,
            "mode": self.mode.value,
            "reserved_at": self.reserved_at,
            "waiters": self.waiters,
            "done": self.future.done(),
        }

    def resolve(self, record: dict[str, Any]) -> bool:
        """Hand the terminal record to waiters; False if someone else already did."""
        try:
            self.future.set_result(record)
        except InvalidStateError:
            return False
        return True

    def fail(self, exc: BaseException) -> bool:
        try:
            self.future.set_exception(exc)
        except InvalidStateError:
            return False
        return True


class IdempotencyGuard:
    """At most one in-flight analysis per entity reference.

    Locks are striped by key hash so unrelated entities do not contend.
    """

    def __init__(self, *, stripes: int = 64) -> None:
        self._stripes = [threading.Lock() for _ in range(max(1, int(stripes)))]
        self._entries: dict[str, InFlightAnalysis] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[zlib.crc32(key.encode("utf-8")) % len(self._stripes)]

    def try_reserve(
        self,
        entity_ref: EntityRef,
        *,
        result_id: str,
        mode: AnalysisMode,
    ) -> tuple[bool, InFlightAnalysis]:
        """Reserve the entity, or return the current reservation with reserved=False."""
        key = entity_ref.key
        with self._lock_for(key):
            current = self._entries.get(key)
            if current is not None:
                return False, current
            entry = InFlightAnalysis(entity_ref=entity_ref, result_id=result_id, mode=mode)
            self._entries[key] = entry
            return True, entry

    def attach(self, entity_ref: EntityRef) -> InFlightAnalysis | None:
        key = entity_ref.key
        with self._lock_for(key):
            current = self._entries.get(key)
            if current is not None:
                current.waiters += 1
            return current

    def release(self, entity_ref: EntityRef, result_id: str | None = None) -> InFlightAnalysis | None:
        key = entity_ref.key
        with self._lock_for(key):
            current = self._entries.get(key)
            if current is None:
                return None
            if result_id is not None and current.result_id != result_id:
                return None
            return self._entries.pop(key)

    def peek(self, entity_ref: EntityRef) -> InFlightAnalysis | None:
        key = entity_ref.key
        with self._lock_for(key):
            return self._entries.get(key)

    def find(self, result_id: str) -> InFlightAnalysis | None:
        for entry in list(self._entries.values()):
            if entry.result_id == result_id:
                return entry
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        return [entry.as_dict() for entry in list(self._entries.values())]

    def reset(self) -> None:
        for lock in self._stripes:
            lock.acquire()
        try:
            self._entries.clear()
        finally:
            for lock in self._stripes:
                lock.release()
