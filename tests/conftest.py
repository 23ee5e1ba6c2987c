import pathlib
import sys
import threading
import time

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance.config import AnalysisSettings
from compliance.document_storage import LocalDocumentStorage
from compliance.domain import DocumentPayload, EntityRef
from compliance.main import create_app
from compliance.provider_client import LLMUsage, MockProviderClient, ProviderClient, ProviderResponse
from compliance.runtime import build_runtime
from compliance.schemas import ComplianceVerdict


class ScriptedProvider(ProviderClient):
    """Provider double: plays back verdicts or raises scripted errors, optionally blocking on a gate."""

    name = "scripted"

    def __init__(self, script=None, *, gate: threading.Event | None = None) -> None:
        self.script = list(script or [])
        self.gate = gate
        self.calls = 0
        self.inflight = 0
        self.max_inflight = 0
        self._lock = threading.Lock()

    def analyze(self, document: DocumentPayload) -> ProviderResponse:
        with self._lock:
            self.calls += 1
            self.inflight += 1
            self.max_inflight = max(self.max_inflight, self.inflight)
            step = self.script.pop(0) if self.script else None
        try:
            if self.gate is not None:
                assert self.gate.wait(timeout=10), "provider gate was never opened"
            if isinstance(step, Exception):
                raise step
            verdict = step if isinstance(step, ComplianceVerdict) else ComplianceVerdict(compliant=True, summary="ok")
            return ProviderResponse(
                verdict=verdict,
                response_data={"scripted": True},
                request_data=self.describe_request(document),
                usage=LLMUsage(model="scripted"),
            )
        finally:
            with self._lock:
                self.inflight -= 1


def wait_until(predicate, *, timeout_s: float = 5.0, interval_s: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval_s)
    return bool(predicate())


def fast_settings(**overrides) -> AnalysisSettings:
    values = {
        "retry_backoff_base_ms": 1,
        "retry_backoff_max_ms": 2,
        "retry_jitter_ms": 0,
        "worker_poll_interval_ms": 5,
        "persist_backoff_ms": 0,
        "worker_autostart": False,
        "wait_timeout_s": 5.0,
    }
    values.update(overrides)
    return AnalysisSettings(**values)


@pytest.fixture(autouse=True)
def reset_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MOCK_LLM_ENABLED", "true")
    monkeypatch.setenv("DOCUMENT_STORAGE_ROOT", str(tmp_path / "documents"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    for name in ("ANALYSIS_QUEUE_BACKEND", "ANALYSIS_STORE_BACKEND", "ANALYSIS_QUEUE_OVERFLOW"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def delivery() -> EntityRef:
    return EntityRef.parse("MaterialDelivery", 7)


@pytest.fixture
def make_runtime(tmp_path: pathlib.Path):
    started = []

    def _make(*, provider=None, settings=None, **kwargs):
        kwargs.setdefault("documents", LocalDocumentStorage(tmp_path / "docs"))
        runtime = build_runtime(
            settings=settings or fast_settings(),
            provider=provider or ScriptedProvider(),
            sleep=lambda _seconds: None,
            **kwargs,
        )
        started.append(runtime)
        return runtime

    yield _make
    for runtime in started:
        runtime.stop()


@pytest.fixture
def client(make_runtime):
    runtime = make_runtime(provider=MockProviderClient(), settings=fast_settings(worker_autostart=True))
    app = create_app(runtime=runtime)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def settings_factory():
    return fast_settings


@pytest.fixture
def eventually():
    return wait_until
