from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AnalysisSettings:
    max_attempts: int = 3
    retry_backoff_base_ms: int = 1000
    retry_backoff_max_ms: int = 30000
    retry_jitter_ms: int = 300
    provider_timeout_s: float = 60.0
    worker_concurrency: int = 2
    provider_max_inflight: int = 2
    worker_poll_interval_ms: int = 200
    worker_autostart: bool = True
    queue_name: str = "analysis"
    queue_max_depth: int = 1000
    queue_overflow: str = "reject"
    queue_block_timeout_s: float = 5.0
    queue_lease_s: float = 60.0
    reconcile_interval_s: float = 60.0
    wait_timeout_s: float = 120.0
    persist_max_attempts: int = 3
    persist_backoff_ms: int = 100

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AnalysisSettings":
        env = os.environ if environ is None else environ
        overflow = str(env.get("ANALYSIS_QUEUE_OVERFLOW", "reject")).strip().lower() or "reject"
        if overflow not in {"reject", "block"}:
            raise ValueError(f"unsupported queue overflow policy: {overflow}")
        return cls(
            max_attempts=_env_int(env, "ANALYSIS_MAX_ATTEMPTS", default=3, minimum=1),
            retry_backoff_base_ms=_env_int(env, "ANALYSIS_RETRY_BACKOFF_BASE_MS", default=1000),
            retry_backoff_max_ms=_env_int(env, "ANALYSIS_RETRY_BACKOFF_MAX_MS", default=30000),
            retry_jitter_ms=_env_int(env, "ANALYSIS_RETRY_JITTER_MS", default=300),
            provider_timeout_s=_env_float(env, "ANALYSIS_PROVIDER_TIMEOUT_S", default=60.0, minimum=1.0),
            worker_concurrency=_env_int(env, "ANALYSIS_WORKER_CONCURRENCY", default=2, minimum=1),
            provider_max_inflight=_env_int(env, "ANALYSIS_PROVIDER_MAX_INFLIGHT", default=2, minimum=1),
            worker_poll_interval_ms=_env_int(env, "ANALYSIS_WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            worker_autostart=_env_bool(env, "ANALYSIS_WORKER_AUTOSTART", default=True),
            queue_name=str(env.get("ANALYSIS_QUEUE_NAME", "analysis")).strip() or "analysis",
            queue_max_depth=_env_int(env, "ANALYSIS_QUEUE_MAX_DEPTH", default=1000),
            queue_overflow=overflow,
            queue_block_timeout_s=_env_float(env, "ANALYSIS_QUEUE_BLOCK_TIMEOUT_S", default=5.0),
            queue_lease_s=_env_float(env, "ANALYSIS_QUEUE_LEASE_S", default=60.0, minimum=1.0),
            reconcile_interval_s=_env_float(env, "ANALYSIS_RECONCILE_INTERVAL_S", default=60.0),
            wait_timeout_s=_env_float(env, "ANALYSIS_WAIT_TIMEOUT_S", default=120.0),
            persist_max_attempts=_env_int(env, "ANALYSIS_PERSIST_MAX_ATTEMPTS", default=3, minimum=1),
            persist_backoff_ms=_env_int(env, "ANALYSIS_PERSIST_BACKOFF_MS", default=100),
        )
