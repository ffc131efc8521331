"""Google Gemini ``generateContent`` client with API key rotation."""

from __future__ import annotations

import logging
import math
import threading

import httpx

from content_digest.pipeline.errors import ProviderQuotaError, ProviderTransientError
from content_digest.pipeline.providers.base import (
    ProviderConfig,
    ProviderResponse,
    post_json,
    require_api_key,
)

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
CHARS_PER_TOKEN_ESTIMATE = 4


class GeminiProvider:
    """Gemini REST client.

    When several API keys are configured a quota error moves the provider to
    the next key and repeats the call. Quota is surfaced to the orchestrator
    only after every key has been tried once for the current call. The active
    key index is shared between threads, so later calls start on the key that
    last worked.
    """

    name = "gemini"

    def __init__(self, *, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client()
        self._key_index = 0
        self._lock = threading.Lock()

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        require_api_key(config)
        keys = config.api_keys
        last_error: ProviderQuotaError | None = None
        for _ in range(len(keys)):
            key_index = self._current_key_index(len(keys))
            try:
                return self._generate_with_key(
                    prompt=prompt,
                    text=text,
                    config=config,
                    key=keys[key_index],
                )
            except ProviderQuotaError as error:
                last_error = error
                if len(keys) > 1:
                    logger.warning(
                        "Gemini key #%d hit quota, rotating to the next key",
                        key_index + 1,
                    )
                self._rotate_key(from_index=key_index, key_count=len(keys))
        if last_error is None:
            raise RuntimeError("Gemini key rotation finished without a result.")
        raise last_error

    def _generate_with_key(
        self,
        *,
        prompt: str,
        text: str,
        config: ProviderConfig,
        key: str,
    ) -> ProviderResponse:
        base_url = (config.base_url or GEMINI_BASE_URL).rstrip("/")
        body = post_json(
            self._client,
            provider=self.name,
            url=f"{base_url}/models/{config.model}:generateContent",
            payload={
                "systemInstruction": {"parts": [{"text": prompt}]},
                "contents": [{"role": "user", "parts": [{"text": text}]}],
                "generationConfig": {
                    "temperature": config.temperature,
                    "maxOutputTokens": config.max_output_tokens,
                },
            },
            headers={"x-goog-api-key": key},
            timeout_seconds=config.timeout_seconds,
        )

        content = _candidate_text(body)
        if content is None:
            feedback = body.get("promptFeedback")
            raise ProviderTransientError(
                f"gemini response has no candidate text: {feedback}",
                provider=self.name,
            )

        usage = body.get("usageMetadata")
        if isinstance(usage, dict) and isinstance(usage.get("totalTokenCount"), int):
            tokens_used = usage["totalTokenCount"]
        else:
            tokens_used = estimate_tokens(prompt + text + content)
        model = body.get("modelVersion")
        return ProviderResponse(
            content=content.strip(),
            tokens_used=tokens_used,
            model=model if isinstance(model, str) else config.model,
        )

    def _current_key_index(self, key_count: int) -> int:
        with self._lock:
            return self._key_index % key_count

    def _rotate_key(self, *, from_index: int, key_count: int) -> None:
        with self._lock:
            if self._key_index % key_count == from_index:
                self._key_index = (from_index + 1) % key_count

    def close(self) -> None:
        self._client.close()


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when the response carries no usage metadata."""

    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


def _candidate_text(body: dict[str, object]) -> str | None:
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    texts = [part["text"] for part in parts if isinstance(part, dict) and "text" in part]
    if not texts:
        return None
    return "".join(str(item) for item in texts)
