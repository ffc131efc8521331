"""Deterministic provider failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from content_digest.pipeline.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderRequestError,
    ProviderTransientError,
)
from content_digest.pipeline.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_AUTH_STATUS_CODES: frozenset[int] = frozenset({401, 403})
_QUOTA_STATUS_CODES: frozenset[int] = frozenset({429})
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 409, 425, 500, 502, 503, 504})

_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient_quota",
    "billing",
    "credits",
    "usage limit",
    "rate limit",
    "too many requests",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "incorrect api key",
    "api key not valid",
    "api_key_invalid",
    "unauthorized",
    "permission denied",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "invalid model",
    "is not supported for generatecontent",
)
# Only trusted as a missing model when the provider answers 404 or sends no status.
_MISSING_RESOURCE_PATTERNS: tuple[str, ...] = ("does not exist",)
_NOT_FOUND_STATUS = 404
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "overloaded",
    "connection reset",
    "connection refused",
    "network error",
    "server error",
)

_ERROR_TYPES: dict[FailureClass, type[ProviderError]] = {
    FailureClass.TRANSIENT: ProviderTransientError,
    FailureClass.QUOTA_EXCEEDED: ProviderQuotaError,
    FailureClass.AUTH_OR_CONFIG: ProviderAuthError,
    FailureClass.REQUEST_REJECTED: ProviderRequestError,
}


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, provider: str) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(
    *,
    provider: str,
    status_code: int | None,
    message: str,
) -> ProviderFailureClassification:
    """Classify a failed provider call into a deterministic retry class.

    Status codes win over message text, and any 5xx is transient whatever its
    body says. Message patterns cover SDK-less transports and providers that
    return 400 for quota or key problems.
    """

    if status_code in _AUTH_STATUS_CODES:
        return ProviderFailureClassification(
            failure_class=FailureClass.AUTH_OR_CONFIG,
            reason_code=f"{provider}_auth_status",
            matched_rule="auth_status_code",
            matched_pattern=str(status_code),
        )
    if status_code in _QUOTA_STATUS_CODES:
        return ProviderFailureClassification(
            failure_class=FailureClass.QUOTA_EXCEEDED,
            reason_code=f"{provider}_quota_status",
            matched_rule="quota_status_code",
            matched_pattern=str(status_code),
        )
    is_transient_status = status_code is not None and (
        status_code in _TRANSIENT_STATUS_CODES or status_code >= 500  # noqa: PLR2004
    )
    if is_transient_status:
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"{provider}_transient",
            matched_rule="transient_status_code",
            matched_pattern=str(status_code),
        )

    haystack = message.lower()

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.QUOTA_EXCEEDED,
            reason_code=f"{provider}_quota_exceeded",
            matched_rule="quota_exceeded",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.AUTH_OR_CONFIG,
            reason_code=f"{provider}_auth_or_config",
            matched_rule="auth_or_config",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is None and status_code in (None, _NOT_FOUND_STATUS):
        pattern = _first_match(haystack, _MISSING_RESOURCE_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            failure_class=FailureClass.AUTH_OR_CONFIG,
            reason_code=f"{provider}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or status_code is None:
        rule = "generic_transient" if pattern is not None else "transport_error"
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"{provider}_transient",
            matched_rule=rule,
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.REQUEST_REJECTED,
        reason_code=f"{provider}_request_rejected",
        matched_rule="fallback_request_rejected",
        matched_pattern=None,
    )


def provider_error_from_failure(
    *,
    provider: str,
    status_code: int | None,
    message: str,
) -> ProviderError:
    """Build the typed provider error for a failed call."""

    classification = classify_provider_failure(
        provider=provider,
        status_code=status_code,
        message=message,
    )
    error_type = _ERROR_TYPES[classification.failure_class]
    return error_type(
        message,
        provider=provider,
        status_code=status_code,
        classification=classification,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
