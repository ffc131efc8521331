"""Error taxonomy for the job pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from content_digest.pipeline.failure_classifier import ProviderFailureClassification


class PipelineError(RuntimeError):
    """Base class for all pipeline errors."""


class ExtractionError(PipelineError):
    """Source could not be turned into normalized text. Fatal for the job."""


class ProviderError(PipelineError):
    """Provider call failed; subclasses decide how the orchestrator reacts."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        classification: ProviderFailureClassification | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.classification = classification


class ProviderAuthError(ProviderError):
    """Authentication or configuration problem. Aborts the whole job."""


class ProviderQuotaError(ProviderError):
    """Provider signalled a rate or usage limit for the current window."""


class ProviderTransientError(ProviderError):
    """Timeouts, 5xx and connection resets. Retried with backoff."""


class ProviderRequestError(ProviderError):
    """Non-retryable rejection of one request. Fails only that task."""


class QueueDeliveryError(PipelineError):
    """Queue could not deliver, acknowledge or requeue a message."""


class PersistenceError(PipelineError):
    """Job state store operation failed."""


class JobNotFoundError(PipelineError):
    """Job id does not exist in the state store."""


class JobCancellationRejected(PipelineError):
    """Cancel requested for a job that is already claimed or finished."""


class UnknownTemplateError(PipelineError):
    """Requested template id is not present in the catalog."""

    def __init__(self, template_ids: list[str]) -> None:
        super().__init__(f"Unknown prompt template ids: {', '.join(template_ids)}")
        self.template_ids = template_ids
