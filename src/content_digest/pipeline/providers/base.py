"""Provider contract shared by the REST clients and the local echo provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from content_digest.pipeline.errors import ProviderTransientError
from content_digest.pipeline.failure_classifier import provider_error_from_failure

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
_ERROR_PREVIEW_CHARS = 500


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Per-job provider selection and request parameters."""

    name: str
    model: str
    api_keys: tuple[str, ...] = ()
    base_url: str | None = None
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    temperature: float = 0.7
    max_output_tokens: int = 4000

    @property
    def api_key(self) -> str | None:
        return self.api_keys[0] if self.api_keys else None


@dataclass(slots=True)
class ProviderResponse:
    """Successful completion returned by a provider."""

    content: str
    tokens_used: int
    model: str
    metadata: dict[str, Any] = field(default_factory=dict)


class AIProvider(Protocol):
    """Generative-AI provider capable of answering one prompt over one text."""

    name: str

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        """Run one prompt. Raises ``ProviderError`` subclasses on failure."""


def post_json(
    client: httpx.Client,
    *,
    provider: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout_seconds: float,
) -> dict[str, Any]:
    """POST a JSON body and return the decoded JSON response.

    Transport failures and non-2xx responses are converted into typed
    ``ProviderError`` subclasses by the failure classifier.
    """

    try:
        response = client.post(url, json=payload, headers=headers, timeout=timeout_seconds)
    except httpx.TimeoutException as error:
        raise ProviderTransientError(
            f"{provider} request timed out after {timeout_seconds:g}s",
            provider=provider,
        ) from error
    except httpx.HTTPError as error:
        raise provider_error_from_failure(
            provider=provider,
            status_code=None,
            message=f"network error: {error}",
        ) from error

    if not response.is_success:
        message = _error_message(response)
        logger.warning(
            "%s request failed with HTTP %s: %s",
            provider,
            response.status_code,
            message,
        )
        raise provider_error_from_failure(
            provider=provider,
            status_code=response.status_code,
            message=message,
        )

    try:
        body = response.json()
    except ValueError as error:
        raise ProviderTransientError(
            f"{provider} returned a non-JSON response",
            provider=provider,
            status_code=response.status_code,
        ) from error
    if not isinstance(body, dict):
        raise ProviderTransientError(
            f"{provider} returned an unexpected response shape",
            provider=provider,
            status_code=response.status_code,
        )
    return body


def require_api_key(config: ProviderConfig) -> str:
    """Return the first configured key or raise an auth error."""

    key = config.api_key
    if not key:
        raise provider_error_from_failure(
            provider=config.name,
            status_code=401,
            message=f"{config.name} api key is not configured",
        )
    return key


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:_ERROR_PREVIEW_CHARS] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            parts = [
                str(error[key])
                for key in ("status", "code", "type", "message")
                if error.get(key) not in (None, "")
            ]
            if parts:
                return ": ".join(parts)[:_ERROR_PREVIEW_CHARS]
        if isinstance(error, str) and error:
            return error[:_ERROR_PREVIEW_CHARS]
    return f"HTTP {response.status_code}"

