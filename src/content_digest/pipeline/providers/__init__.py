"""Generative-AI provider clients."""

from __future__ import annotations

import httpx

from content_digest.pipeline.providers.base import (
    AIProvider,
    ProviderConfig,
    ProviderResponse,
)
from content_digest.pipeline.providers.echo import EchoProvider
from content_digest.pipeline.providers.gemini_provider import GeminiProvider
from content_digest.pipeline.providers.openai_provider import OpenAIProvider

SUPPORTED_PROVIDERS: tuple[str, ...] = ("openai", "gemini", "echo")


def build_provider(name: str, *, client: httpx.Client | None = None) -> AIProvider:
    """Instantiate a provider client by name."""

    normalized = name.strip().lower()
    if normalized == "openai":
        return OpenAIProvider(client=client)
    if normalized == "gemini":
        return GeminiProvider(client=client)
    if normalized == "echo":
        return EchoProvider()
    raise ValueError(
        f"Unsupported provider: {name!r}. Expected one of: {', '.join(SUPPORTED_PROVIDERS)}",
    )


__all__ = [
    "SUPPORTED_PROVIDERS",
    "AIProvider",
    "EchoProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "ProviderConfig",
    "ProviderResponse",
    "build_provider",
]
