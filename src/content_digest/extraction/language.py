"""Lightweight script-based language detection."""

from __future__ import annotations

import re

_HANGUL_RE = re.compile(r"[\uAC00-\uD7A3\u1100-\u11FF\u3130-\u318F]")
_KANA_RE = re.compile(r"[\u3040-\u30FF]")
_CJK_RE = re.compile(r"[\u4E00-\u9FFF]")
_CYRILLIC_RE = re.compile(r"[\u0400-\u04FF]")
_LATIN_RE = re.compile(r"[A-Za-z]")

_SAMPLE_CHARS = 5000


def detect_language(text: str, title: str = "") -> str:
    """Detect language from the dominant script of a text sample.

    Returns one of: ``ko``, ``ja``, ``zh``, ``ru``, ``en``, ``unknown``.
    """

    sample = f"{title} {text[:_SAMPLE_CHARS]}".strip()
    if not sample:
        return "unknown"

    counts = {
        "ko": len(_HANGUL_RE.findall(sample)),
        "ja": len(_KANA_RE.findall(sample)),
        "zh": len(_CJK_RE.findall(sample)),
        "ru": len(_CYRILLIC_RE.findall(sample)),
        "en": len(_LATIN_RE.findall(sample)),
    }
    # Japanese text mixes kana with kanji; any kana decides it.
    if counts["ja"] and counts["ja"] * 5 >= counts["zh"]:
        return "ja"
    language, hits = max(counts.items(), key=lambda item: item[1])
    if hits == 0:
        return "unknown"
    return language
