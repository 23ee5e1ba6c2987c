from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ProviderError(Exception):
    """Failure reported by the document analysis provider."""

    retryable = False

    def __init__(self, *, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, connection failures, rate limits and 5xx answers."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Validation failures and unsupported input; never retried."""

    retryable = False


class PersistenceError(Exception):
    def __init__(self, *, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class QueueFullError(Exception):
    def __init__(self, *, queue_name: str, max_depth: int) -> None:
        super().__init__(f"queue {queue_name} is full (max_depth={max_depth})")
        self.queue_name = queue_name
        self.max_depth = max_depth
