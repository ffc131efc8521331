"""Main-text and title extraction from HTML using trafilatura."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import trafilatura

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HtmlExtraction:
    """Result of HTML text extraction."""

    text: str
    title: str | None
    is_success: bool
    error: str | None = None


def extract_main_text(html: str, *, url: str | None = None) -> HtmlExtraction:
    """Extract the readable body of a page.

    A precision-oriented pass runs first; when it yields nothing, a
    recall-oriented pass is tried before giving up.
    """

    if not html or not html.strip():
        return HtmlExtraction(text="", title=None, is_success=False, error="empty HTML input")

    text: str | None = None
    for options in ({"favor_precision": True, "deduplicate": True}, {"favor_recall": True}):
        try:
            text = trafilatura.extract(
                html,
                url=url,
                include_tables=True,
                include_links=False,
                include_comments=False,
                **options,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura.extract failed for %s: %s", url or "<unknown>", exc)
            text = None
        if text:
            break

    if not text:
        return HtmlExtraction(text="", title=None, is_success=False, error="no content extracted")
    return HtmlExtraction(text=text, title=_page_title(html, url=url), is_success=True)


def _page_title(html: str, *, url: str | None) -> str | None:
    try:
        metadata = trafilatura.extract_metadata(html, default_url=url)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Metadata extraction failed for %s: %s", url or "<unknown>", exc)
        return None
    if metadata is None:
        return None
    title = getattr(metadata, "title", None)
    return title.strip() if isinstance(title, str) and title.strip() else None
