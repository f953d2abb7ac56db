"""
Provider adapters for script generation.
"""

from .base import (
    GeneratedContent,
    GenerationMetrics,
    GenerationRequest,
    ProviderAdapter,
    ProviderCapabilities,
)
from .openai_compatible import OpenAICompatibleAdapter, build_adapters

__all__ = [
    "GeneratedContent",
    "GenerationMetrics",
    "GenerationRequest",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "build_adapters",
]
