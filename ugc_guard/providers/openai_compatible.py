"""
OpenAI-compatible provider adapter.

Gemini, Groq and OpenAI all expose the chat-completions protocol, so one
adapter backed by the ``openai`` SDK serves all three; only the base URL,
model and API key differ.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ugc_guard.config.loader import AppConfig, ProviderSettings
from ugc_guard.core.errors import (
    AUTHENTICATION_ERROR,
    INVALID_REQUEST,
    PERMISSION_DENIED,
    QUOTA_EXCEEDED,
    NonRetryableProviderError,
    ProviderError,
)
from ugc_guard.core.token_counter import TokenUsage

from .base import (
    GeneratedContent,
    GenerationMetrics,
    GenerationRequest,
    ProviderAdapter,
    ProviderCapabilities,
)

logger = logging.getLogger(__name__)

# Seconds allowed for the availability probe
PROBE_TIMEOUT_SECONDS = 3.0
# Seconds allowed for one generation call; build_adapters uses the retry timeout
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
INVALID_RESPONSE = "INVALID_RESPONSE"

SYSTEM_PROMPT = (
    "You write short-form UGC marketing video scripts. Respond with a JSON "
    'object with keys "hook" (string), "script" (string) and "visuals" '
    "(array of strings)."
)


def build_prompt(request: GenerationRequest) -> str:
    """Render a generation request as the user message."""
    lines = [
        f"Product: {request.product_name}",
        f"Niche: {request.niche}",
        f"Target audience: {request.target_audience}",
    ]
    if request.platform:
        lines.append(f"Platform: {request.platform}")
    if request.tone:
        lines.append(f"Tone: {request.tone}")
    if request.length:
        lines.append(f"Length: {request.length}")
    if request.variation is not None:
        lines.append(f"Variation #{request.variation + 1}: take a different angle from other variations.")
    return "\n".join(lines)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Provider adapter speaking the OpenAI chat-completions protocol."""

    def __init__(
        self,
        settings: ProviderSettings,
        client: Optional[OpenAI] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ):
        """Initialize the adapter.

        Args:
            settings: Provider registration from config
            client: Preconfigured client; built from settings when omitted
            timeout: Seconds allowed for one request
        """
        super().__init__()
        self.provider_id = settings.id
        self.settings = settings
        self.timeout = timeout
        self._client = client

    @property
    def api_key(self) -> Optional[str]:
        if not self.settings.api_key_env:
            return None
        return os.environ.get(self.settings.api_key_env) or None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            # retries belong to the generation policy, not the SDK
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.settings.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            max_tokens=self.settings.max_tokens,
            cost_per_million_input=self.settings.cost_per_million_input,
            cost_per_million_output=self.settings.cost_per_million_output,
            speed_optimized=self.settings.speed_optimized,
            premium_quality=self.settings.premium_quality,
        )

    def is_available(self) -> bool:
        if self._client is None and self.api_key is None:
            return False
        try:
            self.client.with_options(timeout=PROBE_TIMEOUT_SECONDS, max_retries=0).models.list()
            return True
        except openai.OpenAIError as e:
            logger.debug("Availability probe failed for %s: %s", self.provider_id, e)
            return False

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.settings.model,
                messages=self._messages(request),
                max_tokens=self.settings.max_tokens,
                response_format={"type": "json_object"},
            )
            content = self._parse(response)
        except ProviderError as e:
            raise self._failed(e, started)
        except openai.OpenAIError as e:
            raise self._failed(self._translate(e), started)

        usage = response.usage
        if usage is not None:
            token_usage = TokenUsage(usage.prompt_tokens, usage.completion_tokens)
        else:
            token_usage = TokenUsage(0, 0)
        metrics = self._record_metrics(GenerationMetrics(
            provider_id=self.provider_id,
            model=self.settings.model,
            response_time_ms=(time.monotonic() - started) * 1000,
            token_usage=token_usage,
            success=True,
        ))
        return GeneratedContent(
            hook=content["hook"],
            script=content["script"],
            visuals=tuple(content["visuals"]),
            token_usage=token_usage,
            metrics=metrics,
        )

    def _messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(request)},
        ]

    def _parse(self, response: Any) -> Dict[str, Any]:
        if not response.choices:
            raise ProviderError(self.provider_id, "response has no choices", code=INVALID_RESPONSE)
        text = response.choices[0].message.content or ""
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise ProviderError(self.provider_id, "response is not valid JSON", code=INVALID_RESPONSE)

        if not isinstance(data, dict):
            raise ProviderError(self.provider_id, "response is not a JSON object", code=INVALID_RESPONSE)
        hook = data.get("hook")
        script = data.get("script")
        visuals = data.get("visuals", [])
        if not isinstance(hook, str) or not isinstance(script, str):
            raise ProviderError(self.provider_id, "response lacks hook or script", code=INVALID_RESPONSE)
        if not isinstance(visuals, list):
            raise ProviderError(self.provider_id, "visuals must be a list", code=INVALID_RESPONSE)
        return {"hook": hook, "script": script, "visuals": [str(v) for v in visuals]}

    def _translate(self, error: openai.OpenAIError) -> ProviderError:
        """Map an SDK exception onto the canonical error taxonomy."""
        status = getattr(error, "status_code", None)
        message = str(error)
        if isinstance(error, openai.AuthenticationError):
            return NonRetryableProviderError(self.provider_id, message, status, AUTHENTICATION_ERROR)
        if isinstance(error, openai.PermissionDeniedError):
            return NonRetryableProviderError(self.provider_id, message, status, PERMISSION_DENIED)
        if isinstance(error, openai.BadRequestError):
            return NonRetryableProviderError(self.provider_id, message, status, INVALID_REQUEST)
        if isinstance(error, openai.RateLimitError):
            if getattr(error, "code", None) == "insufficient_quota":
                return NonRetryableProviderError(self.provider_id, message, status, QUOTA_EXCEEDED)
            return ProviderError(self.provider_id, message, status, "RATE_LIMITED")
        if isinstance(error, openai.APITimeoutError):
            return ProviderError(self.provider_id, message, None, "TIMEOUT")
        if isinstance(error, openai.APIConnectionError):
            return ProviderError(self.provider_id, message, None, "CONNECTION_ERROR")
        return ProviderError(self.provider_id, message, status)

    def _failed(self, error: ProviderError, started: float) -> ProviderError:
        error.metrics = self._record_metrics(GenerationMetrics(
            provider_id=self.provider_id,
            model=self.settings.model,
            response_time_ms=(time.monotonic() - started) * 1000,
            token_usage=TokenUsage.failed_attempt(),
            success=False,
            error=str(error),
        ))
        return error


def build_adapters(config: AppConfig) -> List[OpenAICompatibleAdapter]:
    """Create one adapter per configured provider, in declaration order.

    Each request is bounded by the configured per-attempt timeout.
    """
    timeout = config.retry.timeout_ms / 1000
    return [OpenAICompatibleAdapter(settings, timeout=timeout) for settings in config.providers]
