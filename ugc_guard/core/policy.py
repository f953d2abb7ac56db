"""
Generation policy: retry bounds, backoff, attempt timeouts and request
validation.

Stateless apart from its settings; the retry loop itself lives in the
quota-safe transaction.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ugc_guard.config.loader import RetrySettings

from .errors import GenerationTimeout, error_code_of

VALID_PLATFORMS = ("tiktok", "instagram", "youtube", "x")
VALID_LENGTHS = ("short", "medium", "long")

MAX_PRODUCT_NAME_LENGTH = 100
MAX_NICHE_LENGTH = 50
MAX_TARGET_AUDIENCE_LENGTH = 200

QUALITY_THRESHOLDS: Dict[str, int] = {
    "hook": 80,
    "script": 75,
}


@dataclass
class ValidationResult:
    """Outcome of request validation, with every violation collected."""
    valid: bool
    errors: List[str] = field(default_factory=list)


class GenerationPolicy:
    """Retry, backoff and validation rules for generation attempts."""

    def __init__(self, settings: Optional[RetrySettings] = None):
        self.settings = settings or RetrySettings()

    @property
    def timeout_ms(self) -> int:
        return self.settings.timeout_ms

    @property
    def max_retries(self) -> int:
        return self.settings.max_retries

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (0-based).

        Returns:
            Delay in milliseconds, exponential in the attempt and capped
        """
        delay = self.settings.retry_delay_ms * (self.settings.backoff_multiplier ** attempt)
        return min(delay, self.settings.max_delay_ms)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Decide whether another attempt may follow ``attempt``.

        Args:
            attempt: 0-based index of the attempt that just failed
            error: The failure, if known

        Returns:
            False once the retry budget is spent or the error is non-retryable
        """
        if attempt >= self.settings.max_retries:
            return False
        if error is not None and error_code_of(error) is not None:
            return False
        return True

    def validate(self, request) -> ValidationResult:
        """Validate a generation request, collecting all violations."""
        errors = []

        errors.extend(_check_required(request.product_name, "product_name", MAX_PRODUCT_NAME_LENGTH))
        errors.extend(_check_required(request.niche, "niche", MAX_NICHE_LENGTH))
        errors.extend(_check_required(request.target_audience, "target_audience", MAX_TARGET_AUDIENCE_LENGTH))

        if request.platform is not None and request.platform.lower() not in VALID_PLATFORMS:
            errors.append(f"platform must be one of: {', '.join(VALID_PLATFORMS)}")
        if request.tone is not None and not request.tone.strip():
            errors.append("tone cannot be empty when provided")
        if request.length is not None and request.length.lower() not in VALID_LENGTHS:
            errors.append(f"length must be one of: {', '.join(VALID_LENGTHS)}")

        return ValidationResult(valid=not errors, errors=errors)

    @staticmethod
    def meets_quality_threshold(content_type: str, score: float) -> bool:
        """Compare an externally computed score with the threshold for its type.

        Raises:
            ValueError: If the content type has no threshold
        """
        if content_type not in QUALITY_THRESHOLDS:
            raise ValueError(f"No quality threshold for '{content_type}'")
        return score >= QUALITY_THRESHOLDS[content_type]


def _check_required(value: Optional[str], name: str, max_length: int) -> List[str]:
    if value is None or not str(value).strip():
        return [f"{name} is required"]
    if len(value) > max_length:
        return [f"{name} must be at most {max_length} characters"]
    return []


def call_with_timeout(fn: Callable[[], object], timeout_ms: int):
    """Run ``fn`` on a thread of its own and wait at most ``timeout_ms``.

    The call starts immediately, so the timeout never includes time spent
    waiting for a worker. A call that overruns is left to finish in the
    background; only the wait is abandoned.

    Raises:
        GenerationTimeout: If ``fn`` has not returned in time
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="generation-attempt")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_ms / 1000)
    except FutureTimeout:
        future.cancel()
        raise GenerationTimeout(timeout_ms)
    finally:
        executor.shutdown(wait=False)
