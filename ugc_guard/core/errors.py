"""
Error taxonomy for generation orchestration.

Retry decisions are made by matching the canonical codes below against an
error's ``code`` attribute and message, so every error that should stop a
retry loop must carry one of them.
"""

from typing import Dict, List, Optional

INVALID_REQUEST = "INVALID_REQUEST"
AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
PERMISSION_DENIED = "PERMISSION_DENIED"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

NON_RETRYABLE_CODES = (
    INVALID_REQUEST,
    AUTHENTICATION_ERROR,
    PERMISSION_DENIED,
    QUOTA_EXCEEDED,
)

SOFT_FAILURE_MESSAGE = "AI service temporarily unavailable. Please try again."
STILL_PROCESSING_MESSAGE = (
    "Generation is still processing. Check back shortly using the job id."
)


class UgcGuardError(Exception):
    """Base class for all errors raised by UGC Guard."""
    code: Optional[str] = None


class ValidationError(UgcGuardError):
    """Raised when a generation request fails validation. Never retried."""
    code = INVALID_REQUEST

    def __init__(self, errors: List[str]):
        super().__init__(f"{INVALID_REQUEST}: " + "; ".join(errors))
        self.errors = list(errors)


class EntitlementExceeded(UgcGuardError):
    """Raised when a subscriber's plan does not allow another generation.

    Carries a user-facing upgrade message. Never retried.
    """
    code = QUOTA_EXCEEDED

    def __init__(self, upgrade_message: str, remaining_generations: int = 0):
        super().__init__(f"{QUOTA_EXCEEDED}: {upgrade_message}")
        self.upgrade_message = upgrade_message
        self.remaining_generations = remaining_generations


class ProviderError(UgcGuardError):
    """A single provider adapter failed. Triggers fallback."""

    def __init__(
        self,
        provider_id: str,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        metrics=None,
    ):
        text = f"[{provider_id}] {code}: {message}" if code else f"[{provider_id}] {message}"
        super().__init__(text)
        self.provider_id = provider_id
        self.status = status
        self.code = code
        self.message = message
        self.metrics = metrics


class NonRetryableProviderError(ProviderError):
    """Provider rejected the request itself (auth, permission, quota, input)."""


class NoProvidersAvailable(UgcGuardError):
    """Raised when no provider adapter is enabled."""


class AllProvidersFailed(UgcGuardError):
    """Raised when every enabled provider failed for one request."""

    def __init__(self, errors: Dict[str, Exception]):
        self.errors = dict(errors)
        self.last_error = list(errors.values())[-1] if errors else None
        detail = str(self.last_error) if self.last_error else "no provider attempted"
        super().__init__(f"All providers failed; last error: {detail}")


class GenerationTimeout(UgcGuardError):
    """A single generation attempt exceeded its timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Generation attempt timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class GenerationExhausted(UgcGuardError):
    """Raised when the retry loop gives up.

    ``user_message`` is soft after a single attempt and explicit about the
    attempt count after several.
    """

    def __init__(self, attempts: int, last_error: Optional[Exception]):
        if attempts <= 1:
            user_message = SOFT_FAILURE_MESSAGE
        else:
            user_message = (
                f"Generation failed after {attempts} attempts. "
                "Please try again later."
            )
        super().__init__(user_message)
        self.attempts = attempts
        self.last_error = last_error
        self.user_message = user_message


class GenerationPending(UgcGuardError):
    """The caller stopped waiting on a queued generation that is still running."""

    def __init__(self, job_id: str, message: str = STILL_PROCESSING_MESSAGE):
        super().__init__(message)
        self.job_id = job_id
        self.message = message


def error_code_of(error: Exception) -> Optional[str]:
    """Return the canonical non-retryable code carried by an error, if any."""
    code = getattr(error, "code", None)
    if code in NON_RETRYABLE_CODES:
        return code
    text = str(error)
    for candidate in NON_RETRYABLE_CODES:
        if candidate in text:
            return candidate
    return None


class SubscriberNotFound(UgcGuardError):
    """Raised when a subscriber id is not known to the store."""

    def __init__(self, subscriber_id: str):
        super().__init__(f"Subscriber not found: {subscriber_id}")
        self.subscriber_id = subscriber_id
