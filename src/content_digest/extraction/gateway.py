"""Dispatches a source reference to the matching extractor.

* YouTube URL: transcript via ``youtube-transcript-api``.
* Other ``http(s)`` URL: page fetch plus trafilatura main-text extraction.
* ``file://`` URL or local path: ``.txt``/``.md`` read as UTF-8, ``.html``/``.htm``
  through trafilatura.

Every failure surfaces as ``ExtractionError``; the worker never retries it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

from content_digest.extraction.language import detect_language
from content_digest.http.fetcher import HttpFetcher
from content_digest.http.html_extractor import extract_main_text
from content_digest.http.youtube_extractor import (
    TranscriptResult,
    fetch_transcript,
    is_youtube_url,
)
from content_digest.pipeline.errors import ExtractionError
from content_digest.pipeline.models import NormalizedText

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 200_000
TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown"})
HTML_SUFFIXES = frozenset({".html", ".htm"})

_INLINE_WS_RE = re.compile(r"[ \t\f\v\u00a0]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class ExtractionGateway(Protocol):
    """Turns a source reference into normalized text or raises ``ExtractionError``."""

    def extract(self, source_ref: str) -> NormalizedText: ...


def normalize_text(raw: str, *, max_chars: int = 0) -> tuple[str, bool]:
    """Collapse whitespace, keep paragraph breaks, and cap the length.

    Returns the text and whether it was truncated.
    """

    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_WS_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
    if max_chars > 0 and len(text) > max_chars:
        return text[:max_chars].rstrip(), True
    return text, False


class DefaultExtractionGateway:
    """Production gateway over YouTube, web pages and local documents."""

    def __init__(
        self,
        *,
        fetcher: HttpFetcher | None = None,
        transcript_fetcher: Callable[[str], TranscriptResult] = fetch_transcript,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        self._fetcher = fetcher
        self._transcript_fetcher = transcript_fetcher
        self.max_chars = max_chars

    def extract(self, source_ref: str) -> NormalizedText:
        ref = source_ref.strip()
        if not ref:
            raise ExtractionError("empty source reference")

        if is_youtube_url(ref):
            return self._from_youtube(ref)

        parsed = urlparse(ref)
        scheme = parsed.scheme.lower()
        if scheme in {"http", "https"}:
            return self._from_web(ref)
        if scheme == "file":
            return self._from_file(Path(unquote(parsed.path)), source_ref=ref)
        if scheme and len(scheme) > 1:
            raise ExtractionError(f"unsupported source reference scheme: {scheme}")
        return self._from_file(Path(ref).expanduser(), source_ref=ref)

    def close(self) -> None:
        if self._fetcher is not None:
            self._fetcher.close()

    def _from_youtube(self, url: str) -> NormalizedText:
        result = self._transcript_fetcher(url)
        if not result.is_success:
            raise ExtractionError(f"could not extract transcript: {result.error}")
        metadata: dict[str, object] = {
            "url": url,
            "video_id": result.video_id,
            "duration_seconds": result.duration_seconds,
            "segment_count": result.segment_count,
        }
        return self._normalized(
            result.text,
            source_kind="youtube",
            metadata=metadata,
            language=result.language or None,
        )

    def _from_web(self, url: str) -> NormalizedText:
        if self._fetcher is None:
            self._fetcher = HttpFetcher()
        fetched = self._fetcher.fetch(url)
        if not fetched.is_success:
            raise ExtractionError(f"could not fetch {url}: {fetched.error}")
        metadata: dict[str, object] = {"url": fetched.url, "content_type": fetched.content_type}
        if not fetched.is_html:
            return self._normalized(fetched.content, source_kind="web", metadata=metadata)
        extracted = extract_main_text(fetched.content, url=fetched.url)
        if not extracted.is_success:
            raise ExtractionError(f"could not extract page text from {url}: {extracted.error}")
        if extracted.title:
            metadata["title"] = extracted.title
        return self._normalized(
            extracted.text,
            source_kind="web",
            metadata=metadata,
            title=extracted.title or "",
        )

    def _from_file(self, path: Path, *, source_ref: str) -> NormalizedText:
        if not path.is_file():
            raise ExtractionError(f"source not found: {source_ref}")
        suffix = path.suffix.lower()
        if suffix not in TEXT_SUFFIXES and suffix not in HTML_SUFFIXES:
            raise ExtractionError(f"unsupported document type: {suffix or '<none>'}")
        try:
            raw = path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise ExtractionError(f"could not read {path}: {error}") from error

        metadata: dict[str, object] = {"path": str(path), "file_name": path.name}
        if suffix in TEXT_SUFFIXES:
            return self._normalized(raw, source_kind="file", metadata=metadata, title=path.stem)

        extracted = extract_main_text(raw)
        if not extracted.is_success:
            raise ExtractionError(f"could not extract text from {path.name}: {extracted.error}")
        if extracted.title:
            metadata["title"] = extracted.title
        return self._normalized(
            extracted.text,
            source_kind="file",
            metadata=metadata,
            title=extracted.title or "",
        )

    def _normalized(
        self,
        raw: str,
        *,
        source_kind: str,
        metadata: dict[str, object],
        language: str | None = None,
        title: str = "",
    ) -> NormalizedText:
        text, truncated = normalize_text(raw, max_chars=self.max_chars)
        if not text:
            raise ExtractionError(f"no text extracted from {source_kind} source")
        if truncated:
            metadata["truncated"] = True
            logger.info("Extracted %s text truncated to %d chars", source_kind, self.max_chars)
        return NormalizedText(
            text=text,
            language=language or detect_language(text, title),
            word_count=len(text.split()),
            source_kind=source_kind,
            metadata=metadata,
        )
