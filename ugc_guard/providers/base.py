"""
Base classes for generation providers.

Defines the interface every provider adapter implements, plus the request,
response and metrics types that cross it.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from ugc_guard.core.token_counter import TokenUsage


@dataclass(frozen=True)
class GenerationRequest:
    """Inputs for one UGC script generation."""
    product_name: str
    niche: str
    target_audience: str
    platform: Optional[str] = None
    tone: Optional[str] = None
    length: Optional[str] = None
    variation: Optional[int] = None

    def with_variation(self, index: int) -> "GenerationRequest":
        return replace(self, variation=index)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static limits and pricing of a provider."""
    max_tokens: int
    cost_per_million_input: float
    cost_per_million_output: float
    speed_optimized: bool = False
    premium_quality: bool = False


@dataclass(frozen=True)
class GenerationMetrics:
    """Outcome of a single provider call."""
    provider_id: str
    model: str
    response_time_ms: float
    token_usage: TokenUsage
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class GeneratedContent:
    """Unified response from any provider."""
    hook: str
    script: str
    visuals: Tuple[str, ...] = field(default_factory=tuple)
    token_usage: TokenUsage = field(default_factory=lambda: TokenUsage(0, 0))
    metrics: Optional[GenerationMetrics] = None

    @property
    def provider_id(self) -> Optional[str]:
        return self.metrics.provider_id if self.metrics else None

    @property
    def model(self) -> Optional[str]:
        return self.metrics.model if self.metrics else None


class ProviderAdapter(ABC):
    """Abstract base class for generation providers.

    Every ``generate`` call must record its metrics with ``_record_metrics``
    before returning or raising. The same metrics travel on the returned
    content or on the raised ``ProviderError``; callers running attempts
    concurrently should read those rather than ``last_metrics()``.
    """

    provider_id: str

    def __init__(self):
        self._metrics_lock = threading.Lock()
        self._last_metrics: Optional[GenerationMetrics] = None

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Static limits and pricing of this provider."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the provider is configured and reachable.

        Must return within a few seconds and never raise.
        """

    @abstractmethod
    def generate(self, request: GenerationRequest) -> GeneratedContent:
        """Generate a hook, script and visuals for a request.

        Args:
            request: Product and audience description

        Returns:
            GeneratedContent with token usage and call metrics

        Raises:
            ProviderError: On any failure, carrying the call metrics
        """

    def last_metrics(self) -> Optional[GenerationMetrics]:
        with self._metrics_lock:
            return self._last_metrics

    def _record_metrics(self, metrics: GenerationMetrics) -> GenerationMetrics:
        with self._metrics_lock:
            self._last_metrics = metrics
        return metrics
