"""
Provider orchestration: priority-ordered fallback across provider adapters.

Adapters are tried lowest priority number first, ties broken by the order
they were registered. A per-provider circuit breaker moves repeatedly
failing providers to the back of the chain until their backoff elapses;
open providers are still tried as a last resort.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ugc_guard.config.loader import CircuitBreakerSettings
from ugc_guard.providers.base import (
    GeneratedContent,
    GenerationMetrics,
    GenerationRequest,
    ProviderAdapter,
    ProviderCapabilities,
)

from .errors import AllProvidersFailed, NoProvidersAvailable
from .policy import call_with_timeout

logger = logging.getLogger(__name__)

HEALTHY_RATIO = 0.8
DEGRADED_RATIO = 0.5
DEFAULT_COST_PER_GENERATION = 0.001


@dataclass
class ProviderRegistration:
    adapter: ProviderAdapter
    priority: int
    enabled: bool = True
    order: int = 0

    @property
    def provider_id(self) -> str:
        return self.adapter.provider_id


@dataclass(frozen=True)
class ProviderHealthReport:
    """Aggregate health of the registered providers."""
    status: str  # "healthy", "degraded" or "unhealthy"
    response_time_ms: float
    error_rate: float
    uptime: float
    cost_per_generation: float


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one provider."""

    def __init__(self, settings: CircuitBreakerSettings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.clock = clock
        self.failures = 0
        self.open_until = 0.0

    @property
    def is_open(self) -> bool:
        return self.failures >= self.settings.failure_threshold and self.clock() < self.open_until

    def backoff_ms(self) -> float:
        return min(self.settings.max_backoff_ms, self.settings.base_backoff_ms * 2 ** self.failures)

    def record_success(self) -> None:
        self.failures = 0
        self.open_until = 0.0

    def record_failure(self) -> bool:
        """Count a failure. Returns True when this failure opens the circuit."""
        self.failures += 1
        if self.failures >= self.settings.failure_threshold:
            self.open_until = self.clock() + self.backoff_ms() / 1000
            return self.failures == self.settings.failure_threshold
        return False


class ProviderOrchestrator:
    """Priority-ordered registry of provider adapters with fallback."""

    def __init__(
        self,
        adapters: Optional[List[ProviderAdapter]] = None,
        priorities: Optional[Dict[str, int]] = None,
        breaker_settings: Optional[CircuitBreakerSettings] = None,
    ):
        self._lock = threading.Lock()
        self._registry: Dict[str, ProviderRegistration] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breaker_settings = breaker_settings or CircuitBreakerSettings()
        self._last_metrics: Optional[GenerationMetrics] = None

        priorities = priorities or {}
        for index, adapter in enumerate(adapters or []):
            self.register(adapter, priorities.get(adapter.provider_id, index + 1))

    @classmethod
    def from_config(cls, config, adapters: List[ProviderAdapter]) -> "ProviderOrchestrator":
        """Register adapters with the priority and enabled flag from config."""
        orchestrator = cls(breaker_settings=config.circuit_breaker)
        for adapter in adapters:
            settings = config.get_provider(adapter.provider_id)
            orchestrator.register(adapter, settings.priority, settings.enabled)
        return orchestrator

    def register(self, adapter: ProviderAdapter, priority: int, enabled: bool = True) -> None:
        with self._lock:
            self._registry[adapter.provider_id] = ProviderRegistration(
                adapter=adapter,
                priority=priority,
                enabled=enabled,
                order=len(self._registry),
            )
            self._breakers[adapter.provider_id] = CircuitBreaker(self._breaker_settings)
        logger.info("Registered provider %s (priority %d, enabled=%s)", adapter.provider_id, priority, enabled)

    def enable(self, provider_id: str) -> None:
        self._set_enabled(provider_id, True)

    def disable(self, provider_id: str) -> None:
        self._set_enabled(provider_id, False)

    def _set_enabled(self, provider_id: str, enabled: bool) -> None:
        with self._lock:
            if provider_id not in self._registry:
                raise ValueError(f"Unknown provider: {provider_id}")
            self._registry[provider_id].enabled = enabled
        logger.info("Provider %s %s", provider_id, "enabled" if enabled else "disabled")

    @property
    def adapters(self) -> List[ProviderAdapter]:
        with self._lock:
            registrations = sorted(self._registry.values(), key=lambda r: (r.priority, r.order))
        return [r.adapter for r in registrations]

    def fallback_chain(self) -> List[ProviderAdapter]:
        """Enabled adapters in the order they will be tried."""
        with self._lock:
            enabled = [r for r in self._registry.values() if r.enabled]
            enabled.sort(key=lambda r: (self._breakers[r.provider_id].is_open, r.priority, r.order))
        return [r.adapter for r in enabled]

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        """Generate with the first adapter that succeeds.

        Raises:
            NoProvidersAvailable: If no adapter is enabled
            AllProvidersFailed: If every enabled adapter failed
        """
        chain = self.fallback_chain()
        if not chain:
            raise NoProvidersAvailable("No AI providers are enabled")
        return self._generate_with(chain, request)

    def _call(
        self,
        adapter: ProviderAdapter,
        request: GenerationRequest,
        timeout_ms: Optional[int] = None,
    ) -> GeneratedContent:
        if timeout_ms is None:
            return adapter.generate(request)
        return call_with_timeout(lambda: adapter.generate(request), timeout_ms)

    def _generate_with(
        self,
        chain: List[ProviderAdapter],
        request: GenerationRequest,
        timeout_ms: Optional[int] = None,
    ) -> GeneratedContent:
        errors: Dict[str, Exception] = {}
        for adapter in chain:
            try:
                content = self._call(adapter, request, timeout_ms)
            except Exception as e:
                errors[adapter.provider_id] = e
                self._record_failure(adapter.provider_id, getattr(e, "metrics", None))
                logger.warning("Provider %s failed: %s", adapter.provider_id, e)
                continue

            self._record_success(adapter.provider_id, content.metrics)
            if errors:
                logger.info("Provider %s succeeded after %d fallbacks", adapter.provider_id, len(errors))
            return content

        logger.error("All %d providers failed", len(errors))
        raise AllProvidersFailed(errors)

    def generate_variations(
        self,
        request: GenerationRequest,
        count: int,
        timeout_ms: Optional[int] = None,
    ) -> List[GeneratedContent]:
        """Generate ``count`` independent variations.

        The primary provider produces variations until it fails; the
        remainder is fetched one at a time through the full fallback chain.
        A partial batch is returned as is. With ``timeout_ms`` each provider
        call is bounded on its own and a call that overruns counts as that
        provider failing.

        Raises:
            NoProvidersAvailable: If no adapter is enabled
            AllProvidersFailed: If not a single variation was produced
        """
        if count < 1:
            raise ValueError("count must be >= 1")
        chain = self.fallback_chain()
        if not chain:
            raise NoProvidersAvailable("No AI providers are enabled")

        primary = chain[0]
        results: List[GeneratedContent] = []
        errors: Dict[str, Exception] = {}
        primary_failed = False
        for index in range(count):
            item = request.with_variation(index)
            if not primary_failed:
                try:
                    content = self._call(primary, item, timeout_ms)
                    self._record_success(primary.provider_id, content.metrics)
                    results.append(content)
                    continue
                except Exception as e:
                    primary_failed = True
                    errors[primary.provider_id] = e
                    self._record_failure(primary.provider_id, getattr(e, "metrics", None))
                    logger.warning(
                        "Primary provider %s failed at variation %d: %s",
                        primary.provider_id, index, e,
                    )
            try:
                results.append(self._generate_with(chain, item, timeout_ms))
            except AllProvidersFailed as e:
                errors.update(e.errors)
                logger.warning("Variation %d could not be generated", index)

        if not results:
            raise AllProvidersFailed(errors)
        if len(results) < count:
            logger.warning("Returning partial batch: %d of %d variations", len(results), count)
        return results

    def _record_success(self, provider_id: str, metrics: Optional[GenerationMetrics]) -> None:
        with self._lock:
            self._breakers[provider_id].record_success()
            if metrics is not None:
                self._last_metrics = metrics

    def _record_failure(self, provider_id: str, metrics: Optional[GenerationMetrics]) -> None:
        with self._lock:
            opened = self._breakers[provider_id].record_failure()
            if metrics is not None:
                self._last_metrics = metrics
        if opened:
            logger.error("Circuit opened for provider %s", provider_id)

    def is_circuit_open(self, provider_id: str) -> bool:
        with self._lock:
            return self._breakers[provider_id].is_open

    def last_metrics(self) -> Optional[GenerationMetrics]:
        with self._lock:
            return self._last_metrics

    def is_available(self) -> bool:
        """True iff at least one enabled adapter reports available."""
        with self._lock:
            enabled = [r.adapter for r in self._registry.values() if r.enabled]
        return any(self._probe_all(enabled))

    def _probe_all(self, adapters: List[ProviderAdapter]) -> List[bool]:
        if not adapters:
            return []
        with ThreadPoolExecutor(max_workers=len(adapters)) as executor:
            return list(executor.map(_safe_probe, adapters))

    def get_provider_health(self) -> ProviderHealthReport:
        """Aggregate availability of all registered adapters.

        ``healthy`` needs at least 80% of adapters healthy, ``degraded`` at
        least 50%.
        """
        adapters = self.adapters
        probes = self._probe_all(adapters)
        healthy = sum(
            1 for adapter, ok in zip(adapters, probes)
            if ok and not self.is_circuit_open(adapter.provider_id)
        )
        ratio = healthy / len(adapters) if adapters else 0.0
        if ratio >= HEALTHY_RATIO:
            status = "healthy"
        elif ratio >= DEGRADED_RATIO:
            status = "degraded"
        else:
            status = "unhealthy"

        metrics = self.last_metrics()
        response_time = metrics.response_time_ms if metrics else 0.0
        cost = DEFAULT_COST_PER_GENERATION
        if metrics is not None and metrics.token_usage.estimated_cost:
            cost = metrics.token_usage.estimated_cost

        return ProviderHealthReport(
            status=status,
            response_time_ms=response_time,
            error_rate=1 - ratio,
            uptime=ratio * 100,
            cost_per_generation=cost,
        )

    def capabilities(self) -> ProviderCapabilities:
        """Combined capabilities of all registered adapters.

        Raises:
            NoProvidersAvailable: If nothing is registered
        """
        caps = [adapter.capabilities() for adapter in self.adapters]
        if not caps:
            raise NoProvidersAvailable("No AI providers are registered")
        return ProviderCapabilities(
            max_tokens=max(c.max_tokens for c in caps),
            cost_per_million_input=min(c.cost_per_million_input for c in caps),
            cost_per_million_output=min(c.cost_per_million_output for c in caps),
            speed_optimized=any(c.speed_optimized for c in caps),
            premium_quality=any(c.premium_quality for c in caps),
        )


def _safe_probe(adapter: ProviderAdapter) -> bool:
    try:
        return bool(adapter.is_available())
    except Exception as e:
        logger.warning("Availability probe for %s raised: %s", adapter.provider_id, e)
        return False
