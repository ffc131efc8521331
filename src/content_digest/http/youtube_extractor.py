"""YouTube transcript extraction."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from youtube_transcript_api import YouTubeTranscriptApi

logger = logging.getLogger(__name__)

_YT_VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|embed/|shorts/|live/)|youtu\.be/)"
    r"([a-zA-Z0-9_-]{11})",
)

PREFERRED_LANGUAGES = ("ko", "en")


@dataclass(slots=True)
class TranscriptResult:
    """Joined transcript text of one video."""

    video_id: str
    text: str
    language: str
    duration_seconds: float
    segment_count: int
    is_success: bool
    error: str | None = None


def extract_video_id(url: str) -> str | None:
    """Extract YouTube video ID from URL, or None if not a YouTube URL."""

    match = _YT_VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


def is_youtube_url(url: str) -> bool:
    return extract_video_id(url) is not None


def fetch_transcript(
    url: str,
    *,
    languages: tuple[str, ...] = PREFERRED_LANGUAGES,
    api: YouTubeTranscriptApi | None = None,
) -> TranscriptResult:
    """Fetch subtitles for a video, preferring ``languages``.

    Falls back to the first transcript the video offers in any language.
    """

    video_id = extract_video_id(url)
    if not video_id:
        return _failed("", f"not a YouTube URL: {url}")

    client = api or YouTubeTranscriptApi()

    try:
        fetched = client.fetch(video_id, languages=list(languages))
        return _joined(video_id, fetched, getattr(fetched, "language_code", languages[0]))
    except Exception:  # noqa: BLE001
        logger.debug("Preferred-language transcript fetch failed for %s, trying fallback", video_id)

    try:
        transcript_list = client.list(video_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to list transcripts for %s: %s", video_id, exc)
        return _failed(video_id, f"transcripts unavailable: {exc}")

    for transcript in transcript_list:
        try:
            fetched = transcript.fetch()
        except Exception:  # noqa: BLE001
            logger.debug("Transcript %s failed for %s", transcript.language_code, video_id)
            continue
        return _joined(video_id, fetched, transcript.language_code)

    return _failed(video_id, "no transcripts available")


def _joined(video_id: str, snippets: object, language: str) -> TranscriptResult:
    parts: list[str] = []
    end = 0.0
    count = 0
    for snippet in snippets:  # type: ignore[attr-defined]
        count += 1
        text = str(getattr(snippet, "text", "")).replace("\n", " ").strip()
        if text:
            parts.append(text)
        start = float(getattr(snippet, "start", 0.0) or 0.0)
        duration = float(getattr(snippet, "duration", 0.0) or 0.0)
        end = max(end, start + duration)
    return TranscriptResult(
        video_id=video_id,
        text=" ".join(parts),
        language=language,
        duration_seconds=round(end, 3),
        segment_count=count,
        is_success=bool(parts),
        error=None if parts else "transcript is empty",
    )


def _failed(video_id: str, error: str) -> TranscriptResult:
    return TranscriptResult(
        video_id=video_id,
        text="",
        language="",
        duration_seconds=0.0,
        segment_count=0,
        is_success=False,
        error=error,
    )
