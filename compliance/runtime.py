from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from compliance.config import AnalysisSettings
from compliance.coordinator import AnalysisCoordinator
from compliance.document_storage import LocalDocumentStorage, create_document_storage_from_env
from compliance.idempotency import IdempotencyGuard
from compliance.provider_client import ProviderClient, create_provider_client_from_env, get_provider_info
from compliance.queue_backend import AnalysisRequestQueue, InMemoryQueueBackend, create_queue_backend_from_env
from compliance.result_store import ResultStore, create_result_store_from_env
from compliance.repositories import InMemoryAnalysisResultsRepository
from compliance.worker_runtime import AnalysisWorker

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRuntime:
    settings: AnalysisSettings
    store: ResultStore
    guard: IdempotencyGuard
    queue: AnalysisRequestQueue
    provider: ProviderClient
    worker: AnalysisWorker
    coordinator: AnalysisCoordinator
    documents: LocalDocumentStorage | None = None

    def start(self, *, start_worker: bool | None = None) -> dict[str, int]:
        summary = self.worker.reconcile()
        if self.settings.worker_autostart if start_worker is None else start_worker:
            self.worker.start()
        return summary

    def stop(self) -> None:
        self.worker.stop()

    def status(self) -> dict[str, Any]:
        return {
            "queue": {
                "name": self.queue.queue_name,
                "depth": self.queue.depth(),
                "max_depth": self.queue.max_depth,
                "overflow": self.queue.overflow,
                "durable": self.queue.durable,
            },
            "in_flight": self.guard.snapshot(),
            "worker": self.worker.stats(),
            "provider": get_provider_info(self.provider),
        }


def build_runtime(
    *,
    settings: AnalysisSettings | None = None,
    store: ResultStore | None = None,
    queue_backend: Any = None,
    provider: ProviderClient | None = None,
    documents: LocalDocumentStorage | None = None,
    sleep: Callable[[float], None] = time.sleep,
    worker_id: str | None = None,
) -> AnalysisRuntime:
    settings = settings or AnalysisSettings()
    store = store or ResultStore(InMemoryAnalysisResultsRepository())
    guard = IdempotencyGuard()
    queue = AnalysisRequestQueue(
        queue_backend if queue_backend is not None else InMemoryQueueBackend(max_depth=settings.queue_max_depth),
        queue_name=settings.queue_name,
        overflow=settings.queue_overflow,
        block_timeout_s=settings.queue_block_timeout_s,
        lease_s=settings.queue_lease_s,
    )
    provider = provider or create_provider_client_from_env(settings=settings)
    worker = AnalysisWorker(
        store=store,
        queue=queue,
        guard=guard,
        provider=provider,
        settings=settings,
        sleep=sleep,
        worker_id=worker_id,
    )
    coordinator = AnalysisCoordinator(
        store=store,
        guard=guard,
        queue=queue,
        documents=documents,
        settings=settings,
    )
    return AnalysisRuntime(
        settings=settings,
        store=store,
        guard=guard,
        queue=queue,
        provider=provider,
        worker=worker,
        coordinator=coordinator,
        documents=documents,
    )


def build_runtime_from_env(environ: Mapping[str, str] | None = None) -> AnalysisRuntime:
    env = os.environ if environ is None else environ
    settings = AnalysisSettings.from_env(env)
    runtime = build_runtime(
        settings=settings,
        store=create_result_store_from_env(env),
        queue_backend=create_queue_backend_from_env(env),
        provider=create_provider_client_from_env(env, settings=settings),
        documents=create_document_storage_from_env(env),
    )
    logger.info(
        "analysis_runtime_built store=%s queue_durable=%s provider=%s",
        type(runtime.store.repository).__name__,
        runtime.queue.durable,
        runtime.provider.name,
    )
    return runtime
