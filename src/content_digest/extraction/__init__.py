"""Content extraction gateway: source reference to normalized text."""

from content_digest.extraction.gateway import (
    DefaultExtractionGateway,
    ExtractionGateway,
    normalize_text,
)

__all__ = ["DefaultExtractionGateway", "ExtractionGateway", "normalize_text"]
