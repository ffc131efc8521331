"""Deterministic local provider for demos and tests."""

from __future__ import annotations

from content_digest.pipeline.providers.base import ProviderConfig, ProviderResponse

ECHO_PREVIEW_WORDS = 60


class EchoProvider:
    """Answers every prompt with its first line followed by a preview of the text."""

    name = "echo"

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        heading = prompt.strip().splitlines()[0] if prompt.strip() else "Result"
        words = text.split()
        preview = " ".join(words[:ECHO_PREVIEW_WORDS])
        if len(words) > ECHO_PREVIEW_WORDS:
            preview += " ..."
        return ProviderResponse(
            content=f"{heading}\n\n{preview}",
            tokens_used=len(prompt.split()) + len(words),
            model=config.model or "echo",
        )
