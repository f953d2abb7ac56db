"""
Shared fixtures and fake provider adapters.
"""

import threading
import time
from datetime import datetime, timezone

import pytest

from ugc_guard.config.loader import default_config
from ugc_guard.core.errors import ProviderError
from ugc_guard.core.token_counter import TokenUsage
from ugc_guard.providers.base import (
    GeneratedContent,
    GenerationMetrics,
    GenerationRequest,
    ProviderAdapter,
    ProviderCapabilities,
)

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeAdapter(ProviderAdapter):
    """Adapter that succeeds, fails or stalls on demand."""

    def __init__(
        self,
        provider_id,
        fail=False,
        error_code=None,
        delay=0.0,
        available=True,
        input_tokens=500,
        output_tokens=800,
        fail_after=None,
    ):
        super().__init__()
        self.provider_id = provider_id
        self.fail = fail
        self.error_code = error_code
        self.delay = delay
        self.available = available
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.fail_after = fail_after
        self.calls = 0
        self._calls_lock = threading.Lock()

    def capabilities(self):
        return ProviderCapabilities(
            max_tokens=4096,
            cost_per_million_input=0.10,
            cost_per_million_output=0.40,
        )

    def is_available(self):
        return self.available

    def generate(self, request: GenerationRequest):
        with self._calls_lock:
            self.calls += 1
            call_number = self.calls
        if self.delay:
            time.sleep(self.delay)

        failing = self.fail or (self.fail_after is not None and call_number > self.fail_after)
        if failing:
            metrics = self._record_metrics(GenerationMetrics(
                provider_id=self.provider_id,
                model=f"{self.provider_id}-model",
                response_time_ms=1.0,
                token_usage=TokenUsage.failed_attempt(),
                success=False,
                error="boom",
            ))
            raise ProviderError(self.provider_id, "boom", status=500, code=self.error_code, metrics=metrics)

        usage = TokenUsage(self.input_tokens, self.output_tokens)
        metrics = self._record_metrics(GenerationMetrics(
            provider_id=self.provider_id,
            model=f"{self.provider_id}-model",
            response_time_ms=12.0,
            token_usage=usage,
            success=True,
        ))
        suffix = f" #{request.variation}" if request.variation is not None else ""
        return GeneratedContent(
            hook=f"Stop scrolling: {request.product_name}{suffix}",
            script=f"A script about {request.product_name} for {request.target_audience}.",
            visuals=("close-up of product", "happy customer"),
            token_usage=usage,
            metrics=metrics,
        )


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def request_data():
    return GenerationRequest(
        product_name="GlowSerum",
        niche="skincare",
        target_audience="women 25-35 with dry skin",
        platform="tiktok",
    )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW
