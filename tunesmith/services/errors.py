"""Error taxonomy for the music generation engine.

Every error raised across a component boundary derives from
``MusicEngineError`` and carries three things the callers need:

- ``user_message``: text safe to show to an end user,
- ``retry_later``: True when the failure is on our side or the provider's
  (timeout, circuit open, exhausted retries) and the user should simply try
  again; False when the request itself was rejected,
- ``http_status``: the status code the HTTP layer maps the error to.
"""
from __future__ import annotations

RETRY_LATER_MESSAGE = "Music generation is temporarily unavailable. Please try again later."
TIMEOUT_MESSAGE = "Music generation took too long to finish. Please try again later."
REJECTED_MESSAGE = "The music generation request was rejected."

# Provider status codes that are never worth retrying.
TERMINAL_STATUS_CODES = frozenset({400, 401, 403, 413})


class MusicEngineError(Exception):
    """Base class for all engine errors."""

    retry_later: bool = False
    http_status: int = 500
    default_message: str = REJECTED_MESSAGE

    def __init__(self, detail: str, *, user_message: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.user_message = user_message or self.default_message


class ValidationError(MusicEngineError):
    """Bad input; never retried."""

    http_status = 422

    def __init__(self, detail: str):
        super().__init__(detail, user_message=f"{REJECTED_MESSAGE} {detail}")


class DuplicateInFlightError(MusicEngineError):
    """The requester already has a pending job."""

    http_status = 409
    default_message = (
        "A music generation request is already in progress. "
        "Please wait for it to finish before starting another."
    )

    def __init__(self, requester_id: str, existing_job_id: str):
        super().__init__(
            f"Requester {requester_id} already has pending job {existing_job_id}"
        )
        self.requester_id = requester_id
        self.existing_job_id = existing_job_id


class ProviderError(MusicEngineError):
    """Base for failures talking to the music provider."""

    http_status = 502

    def __init__(
        self,
        detail: str,
        *,
        status_code: int | None = None,
        user_message: str | None = None,
    ):
        super().__init__(detail, user_message=user_message)
        self.status_code = status_code


class ProviderTerminalError(ProviderError):
    """Auth, bad request, payload too large, or a provider-reported failure."""


class ProviderTransientError(ProviderError):
    """Network error, 5xx, rate limit, or an unusable response; retried per policy."""

    retry_later = True
    http_status = 503
    default_message = RETRY_LATER_MESSAGE


class CircuitOpenError(ProviderError):
    """The shared circuit breaker is open; the provider is not called at all."""

    retry_later = True
    http_status = 503
    default_message = RETRY_LATER_MESSAGE

    def __init__(self, retry_after: float):
        super().__init__(
            f"Music provider unavailable (circuit open), retry after {retry_after:.0f}s"
        )
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    """No success signal before the polling deadline."""

    retry_later = True
    http_status = 504
    default_message = TIMEOUT_MESSAGE

    def __init__(self, task_id: str, timeout_seconds: float):
        super().__init__(
            f"Provider task {task_id} did not complete within {timeout_seconds:.0f}s"
        )
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class StorageMigrationError(MusicEngineError):
    """Durable-storage migration failed; logged only, never surfaced."""

    retry_later = True


class NotFoundError(MusicEngineError):
    http_status = 404
    default_message = "Generation job not found."


class ForbiddenError(MusicEngineError):
    http_status = 403
    default_message = "You do not have permission to modify this generation job."


def status_code_of(exc: BaseException) -> int | None:
    """Best-effort HTTP status extraction from any exception."""
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(exc: BaseException) -> bool:
    """Classify an error raised by a provider call as retryable or terminal."""
    if isinstance(exc, (ValidationError, ProviderTerminalError, CircuitOpenError)):
        return False
    return status_code_of(exc) not in TERMINAL_STATUS_CODES
