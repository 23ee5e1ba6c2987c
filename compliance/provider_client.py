"""
Document analysis provider: submits a quality document to an LLM and parses
the compliance verdict.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, timeout)
  - OpenAIProviderClient: any OpenAI-compatible chat API (OpenAI, Ollama, vLLM)
  - MockProviderClient: deterministic verdicts for local runs and demos
  - RetryPolicy / call_with_retry: bounded retries for transient failures

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini
  LLM_TEMPERATURE       = 0.1
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (force mock mode)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from compliance.config import AnalysisSettings
from compliance.domain import DocumentPayload
from compliance.errors import PermanentProviderError, ProviderError, TransientProviderError
from compliance.schemas import ComplianceVerdict, NonCompliance

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png", ".gif": "image/gif"}
_FILE_EXTENSIONS = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
_TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json"}


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.1
    max_tokens: int = 2048
    timeout_s: float = 60.0


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
            "latency_ms": self.latency_ms,
        }


@dataclass
class ProviderResponse:
    verdict: ComplianceVerdict
    response_data: dict[str, Any]
    request_data: dict[str, Any]
    usage: LLMUsage = field(default_factory=LLMUsage)


class ProviderClient:
    name = "base"

    def describe_request(self, document: DocumentPayload) -> dict[str, Any]:
        """Audit payload for a document; never contains raw bytes."""
        return {"provider": self.name, "document": document.metadata()}

    def analyze(self, document: DocumentPayload) -> ProviderResponse:
        raise NotImplementedError


_SYSTEM_PROMPT = """You are a construction quality inspector. You review quality and compliance
documents (material certificates, test protocols, declarations of conformity, site photos)
attached to construction-site records.

Rules:
1. Base every finding on the document only; never invent data that is not visible.
2. Flag each problem separately: missing stamps or signatures, expired validity,
   batch or quantity mismatches, missing test results, unreadable pages.
3. Answer with JSON only.
"""

_USER_TEMPLATE = """Document: {filename} ({content_type}, {size} bytes)

Return the verdict in this JSON format:
{{
  "compliant": <bool>,
  "summary": "<string, short conclusion>",
  "non_compliances": [
    {{"issue": "<string>", "severity": "low|medium|high", "reference": "<page or section>"}}
  ]
}}
An empty "non_compliances" list means the document is compliant."""


def _document_content_parts(document: DocumentPayload) -> list[dict[str, Any]]:
    ext = document.extension
    encoded = base64.b64encode(document.content).decode("ascii")
    if ext in _IMAGE_EXTENSIONS:
        mime = _IMAGE_EXTENSIONS[ext]
        return [{"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}}]
    if ext in _FILE_EXTENSIONS:
        mime = _FILE_EXTENSIONS[ext]
        return [
            {
                "type": "file",
                "file": {"filename": document.filename, "file_data": f"data:{mime};base64,{encoded}"},
            }
        ]
    if ext in _TEXT_EXTENSIONS or document.content_type.startswith("text/"):
        return [{"type": "text", "text": document.content.decode("utf-8", errors="replace")}]
    raise PermanentProviderError(
        code="PROVIDER_UNSUPPORTED_FORMAT",
        message=f"unsupported document format: {ext or document.content_type}",
    )


def _get_provider_config(
    environ: Mapping[str, str] | None = None,
    *,
    timeout_s: float = 60.0,
) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower() or "openai"
    temperature = float(env.get("LLM_TEMPERATURE", "0.1").strip() or "0.1")

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", "").strip() or "qwen2.5:7b",
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
            timeout_s=timeout_s,
        )

    return ProviderConfig(
        provider=provider,
        model=env.get("LLM_MODEL", "").strip() or "gpt-4o-mini",
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
        timeout_s=timeout_s,
    )


def is_mock_llm_enabled(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get("MOCK_LLM_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}


def is_real_llm_available(environ: Mapping[str, str] | None = None) -> bool:
    if is_mock_llm_enabled(environ):
        return False
    config = _get_provider_config(environ)
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _import_openai() -> Any:
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required. Install with: pip install openai") from exc
    return openai


def _create_client(config: ProviderConfig):
    openai = _import_openai()

    kwargs: dict[str, Any] = {"timeout": config.timeout_s, "max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.OpenAI(**kwargs)


def classify_openai_error(exc: Exception) -> ProviderError:
    """Map an openai SDK exception onto the transient/permanent split."""
    if isinstance(exc, ProviderError):
        return exc
    openai = _import_openai()
    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, openai.APITimeoutError):
        return TransientProviderError(code="PROVIDER_TIMEOUT", message=message)
    if isinstance(exc, openai.APIConnectionError):
        return TransientProviderError(code="PROVIDER_UNAVAILABLE", message=message)
    if isinstance(exc, openai.APIStatusError):
        status = int(exc.status_code)
        if status == 429:
            return TransientProviderError(code="PROVIDER_RATE_LIMITED", message=message, status_code=status)
        if status in {408, 409} or status >= 500:
            return TransientProviderError(code="PROVIDER_UPSTREAM_ERROR", message=message, status_code=status)
        return PermanentProviderError(code="PROVIDER_REQUEST_REJECTED", message=message, status_code=status)
    return PermanentProviderError(code="PROVIDER_UNEXPECTED_ERROR", message=message)


class OpenAIProviderClient(ProviderClient):
    name = "openai"

    def __init__(self, config: ProviderConfig, *, client: Any = None) -> None:
        self.config = config
        self.name = config.provider
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = _create_client(self.config)
        return self._client

    def describe_request(self, document: DocumentPayload) -> dict[str, Any]:
        return {
            "provider": self.config.provider,
            "model": self.config.model,
            "temperature": self.config.temperature,
            "system_prompt": _SYSTEM_PROMPT,
            "user_prompt": self._user_prompt(document),
            "document": document.metadata(),
        }

    @staticmethod
    def _user_prompt(document: DocumentPayload) -> str:
        return _USER_TEMPLATE.format(
            filename=document.filename,
            content_type=document.content_type,
            size=document.size,
        )

    def analyze(self, document: DocumentPayload) -> ProviderResponse:
        if not document.content:
            raise PermanentProviderError(code="PROVIDER_DOCUMENT_EMPTY", message="document is empty")
        parts = _document_content_parts(document)
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [{"type": "text", "text": self._user_prompt(document)}, *parts],
            },
        ]

        t0 = time.monotonic()
        try:
            response = self._get_client().chat.completions.create(
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                messages=messages,
                response_format={"type": "json_object"},
                timeout=self.config.timeout_s,
            )
        except Exception as exc:
            raise classify_openai_error(exc) from exc
        elapsed_ms = (time.monotonic() - t0) * 1000

        content = response.choices[0].message.content or ""
        try:
            verdict = ComplianceVerdict.model_validate_json(content)
        except ValidationError as exc:
            raise TransientProviderError(
                code="PROVIDER_RESPONSE_INVALID",
                message=f"model output is not a valid verdict: {exc.error_count()} errors",
            ) from exc

        usage_data = response.usage
        usage = LLMUsage(
            prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
            completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
            total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
            model=self.config.model,
            latency_ms=round(elapsed_ms, 1),
        )
        dump = getattr(response, "model_dump", None)
        response_data = dump(mode="json") if callable(dump) else {"content": content}
        return ProviderResponse(
            verdict=verdict,
            response_data=response_data,
            request_data=self.describe_request(document),
            usage=usage,
        )


_MOCK_FINDINGS = [
    ("Certificate batch number does not match the delivered batch", "high"),
    ("Certificate validity period has expired", "high"),
    ("Manufacturer stamp or signature is missing", "medium"),
    ("Test protocol does not state the strength class", "medium"),
    ("Scan is partially unreadable", "low"),
]


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    h = hashlib.sha256(seed.encode()).hexdigest()
    val = int(h[:8], 16) / 0xFFFFFFFF
    return min_val + val * (max_val - min_val)


class MockProviderClient(ProviderClient):
    """Deterministic verdicts keyed by the document hash."""

    name = "mock"

    def __init__(self, *, compliance_rate: float = 0.7) -> None:
        self.compliance_rate = compliance_rate

    def analyze(self, document: DocumentPayload) -> ProviderResponse:
        if not document.content:
            raise PermanentProviderError(code="PROVIDER_DOCUMENT_EMPTY", message="document is empty")
        digest = document.sha256
        if _deterministic_float(digest) < self.compliance_rate:
            verdict = ComplianceVerdict(compliant=True, summary=f"{document.filename}: no issues found")
        else:
            count = 1 + int(_deterministic_float(f"{digest}:count", 0, 2.99))
            start = int(_deterministic_float(f"{digest}:start", 0, len(_MOCK_FINDINGS) - 0.01))
            findings = [_MOCK_FINDINGS[(start + i) % len(_MOCK_FINDINGS)] for i in range(count)]
            verdict = ComplianceVerdict(
                compliant=False,
                summary=f"{document.filename}: {count} issue(s) found",
                non_compliances=[NonCompliance(issue=issue, severity=sev) for issue, sev in findings],
            )
        return ProviderResponse(
            verdict=verdict,
            response_data={"mock": True, "verdict": verdict.model_dump(mode="json")},
            request_data=self.describe_request(document),
            usage=LLMUsage(model="mock"),
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    jitter_ms: int = 300

    @classmethod
    def from_settings(cls, settings: AnalysisSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_ms=settings.retry_backoff_base_ms,
            backoff_max_ms=settings.retry_backoff_max_ms,
            jitter_ms=settings.retry_jitter_ms,
        )

    def _jitter(self, *, seed: str, attempt: int) -> int:
        if self.jitter_ms <= 0:
            return 0
        digest = hashlib.sha256(f"{seed}:{attempt}".encode("utf-8")).digest()
        return int.from_bytes(digest[:2], byteorder="big") % (self.jitter_ms + 1)

    def backoff_ms(self, *, attempt: int, seed: str) -> int:
        """Delay after the given failed attempt (1-based)."""
        normalized = max(1, int(attempt))
        base = max(0, int(self.backoff_base_ms))
        max_backoff = max(base, int(self.backoff_max_ms))
        exponential = base * (2 ** (normalized - 1))
        return min(max_backoff, exponential) + self._jitter(seed=seed, attempt=normalized)


@dataclass
class AttemptOutcome:
    response: ProviderResponse | None
    attempts: int
    error: ProviderError | None = None

    @property
    def succeeded(self) -> bool:
        return self.response is not None


def call_with_retry(
    client: ProviderClient,
    document: DocumentPayload,
    policy: RetryPolicy,
    *,
    seed: str,
    sleep: Callable[[float], None] = time.sleep,
) -> AttemptOutcome:
    attempts = 0
    last_error: ProviderError | None = None
    while attempts < policy.max_attempts:
        attempts += 1
        try:
            response = client.analyze(document)
        except TransientProviderError as exc:
            last_error = exc
            if attempts >= policy.max_attempts:
                break
            delay_ms = policy.backoff_ms(attempt=attempts, seed=seed)
            logger.warning(
                "provider_transient_failure seed=%s attempt=%s code=%s retry_in_ms=%s",
                seed,
                attempts,
                exc.code,
                delay_ms,
            )
            sleep(delay_ms / 1000.0)
            continue
        except PermanentProviderError as exc:
            logger.warning("provider_permanent_failure seed=%s attempt=%s code=%s", seed, attempts, exc.code)
            return AttemptOutcome(response=None, attempts=attempts, error=exc)
        except Exception as exc:
            logger.exception("provider_unexpected_failure seed=%s attempt=%s", seed, attempts)
            return AttemptOutcome(
                response=None,
                attempts=attempts,
                error=PermanentProviderError(
                    code="PROVIDER_UNEXPECTED_ERROR",
                    message=f"{type(exc).__name__}: {exc}",
                ),
            )
        return AttemptOutcome(response=response, attempts=attempts)
    logger.warning(
        "provider_retries_exhausted seed=%s attempts=%s code=%s",
        seed,
        attempts,
        last_error.code if last_error else "",
    )
    return AttemptOutcome(response=None, attempts=attempts, error=last_error)


def create_provider_client_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    settings: AnalysisSettings | None = None,
) -> ProviderClient:
    timeout_s = settings.provider_timeout_s if settings is not None else 60.0
    if not is_real_llm_available(environ):
        return MockProviderClient()
    return OpenAIProviderClient(_get_provider_config(environ, timeout_s=timeout_s))


def get_provider_info(client: ProviderClient) -> dict[str, Any]:
    """Current provider configuration (safe for logging, no secrets)."""
    if isinstance(client, OpenAIProviderClient):
        config = client.config
        return {
            "provider": config.provider,
            "model": config.model,
            "base_url": config.base_url or "(default)",
            "has_api_key": bool(config.api_key),
            "real_llm_available": True,
            "timeout_s": config.timeout_s,
        }
    return {
        "provider": client.name,
        "model": None,
        "base_url": None,
        "has_api_key": False,
        "real_llm_available": False,
        "timeout_s": None,
    }
