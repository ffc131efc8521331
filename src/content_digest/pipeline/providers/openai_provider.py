"""OpenAI chat-completions client."""

from __future__ import annotations

import httpx

from content_digest.pipeline.errors import ProviderTransientError
from content_digest.pipeline.providers.base import (
    ProviderConfig,
    ProviderResponse,
    post_json,
    require_api_key,
)

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class OpenAIProvider:
    """Runs a template as the system message and the text as the user message."""

    name = "openai"

    def __init__(self, *, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client()

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        key = require_api_key(config)
        base_url = (config.base_url or OPENAI_BASE_URL).rstrip("/")
        body = post_json(
            self._client,
            provider=self.name,
            url=f"{base_url}/chat/completions",
            payload={
                "model": config.model,
                "messages": [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": text},
                ],
                "temperature": config.temperature,
                "max_tokens": config.max_output_tokens,
            },
            headers={"Authorization": f"Bearer {key}"},
            timeout_seconds=config.timeout_seconds,
        )

        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderTransientError(
                "openai response has no choices",
                provider=self.name,
            )
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderTransientError(
                "openai response has no message content",
                provider=self.name,
            )

        usage = body.get("usage")
        tokens_used = 0
        if isinstance(usage, dict) and isinstance(usage.get("total_tokens"), int):
            tokens_used = usage["total_tokens"]
        model = body.get("model") if isinstance(body.get("model"), str) else config.model
        return ProviderResponse(
            content=content.strip(),
            tokens_used=tokens_used,
            model=model,
            metadata={"finish_reason": choices[0].get("finish_reason")},
        )

    def close(self) -> None:
        self._client.close()
