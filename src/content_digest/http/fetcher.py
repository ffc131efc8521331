"""Blocking HTTP page fetcher with transport retries and a size cap."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; ContentDigestBot/1.0)"


@dataclass(slots=True)
class FetchResult:
    """Result of an HTTP fetch operation."""

    url: str
    status_code: int
    content: str
    content_type: str
    is_success: bool
    error: str | None = None

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower() or self.content.lstrip()[:1] == "<"


class HttpFetcher:
    """HTTP client wrapper with retry, timeout, and user-agent configuration."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": user_agent},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def fetch(self, url: str) -> FetchResult:
        """Fetch URL content, returning a structured result instead of raising."""

        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            logger.warning("Timeout fetching %s", url)
            return _failed(url, "timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            return _failed(url, str(exc))

        content_type = response.headers.get("content-type", "")
        if len(response.content) > self._max_bytes:
            return FetchResult(
                url=url,
                status_code=response.status_code,
                content="",
                content_type=content_type,
                is_success=False,
                error=f"response larger than {self._max_bytes} bytes",
            )
        return FetchResult(
            url=str(response.url),
            status_code=response.status_code,
            content=response.text,
            content_type=content_type,
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _failed(url: str, error: str) -> FetchResult:
    return FetchResult(
        url=url,
        status_code=0,
        content="",
        content_type="",
        is_success=False,
        error=error,
    )
