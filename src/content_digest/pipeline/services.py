"""Producer-side use cases: submit, cancel, inspect and resubmit jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from content_digest.pipeline.errors import JobCancellationRejected, JobNotFoundError
from content_digest.pipeline.models import (
    JobCreate,
    JobDetails,
    JobEnvelope,
    JobStatus,
    JobView,
)
from content_digest.pipeline.providers import SUPPORTED_PROVIDERS
from content_digest.pipeline.queue import SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.templates import TemplateCatalog

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = "canceled"


@dataclass(slots=True)
class SubmitJob:
    """High-level command to create and enqueue one job."""

    source_ref: str
    template_ids: tuple[str, ...]
    provider: str | None = None
    job_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobSubmission:
    """Created job and the queue message carrying it."""

    job: JobView
    message_id: str


class JobService:
    """Coordinates job rows and queue messages for callers."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        queue: SqliteTaskQueue,
        catalog: TemplateCatalog,
        default_provider: str,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.catalog = catalog
        self.default_provider = default_provider

    def submit_job(self, command: SubmitJob) -> JobSubmission:
        """Validate the request, persist a pending job and enqueue its envelope."""

        source_ref = command.source_ref.strip()
        if not source_ref:
            raise ValueError("source_ref must not be empty.")
        template_ids = tuple(template_id.strip() for template_id in command.template_ids)
        if not template_ids or not all(template_ids):
            raise ValueError("At least one template id is required.")
        duplicates = sorted({item for item in template_ids if template_ids.count(item) > 1})
        if duplicates:
            raise ValueError(f"Duplicate template ids: {', '.join(duplicates)}")
        self.catalog.resolve(template_ids)

        provider = (command.provider or self.default_provider).strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported provider: {provider}. Use one of: {', '.join(SUPPORTED_PROVIDERS)}",
            )

        job = self.repository.create_job(
            JobCreate(
                source_ref=source_ref,
                template_ids=template_ids,
                provider=provider,
                job_id=command.job_id,
                user_id=command.user_id,
                session_id=command.session_id,
                metadata=dict(command.metadata),
            ),
        )
        message_id = self.queue.enqueue(
            JobEnvelope(
                job_id=job.job_id,
                source_ref=job.source_ref,
                template_ids=job.template_ids,
                user_id=job.user_id,
                session_id=job.session_id,
            ),
        )
        self.repository.add_job_event(
            job_id=job.job_id,
            event_type="enqueued",
            details={"message_id": message_id},
        )
        logger.info(
            "Job %s submitted with %d templates (provider=%s)",
            job.job_id,
            len(template_ids),
            provider,
        )
        return JobSubmission(job=job, message_id=message_id)

    def cancel_job(self, job_id: str) -> JobView:
        """Cancel a job that no worker has claimed yet.

        Claimed jobs run to completion; there is no way to interrupt a worker
        mid-job, so processing and terminal jobs reject the request.
        """

        job = self.repository.require_job(job_id)
        if job.status is not JobStatus.PENDING:
            raise JobCancellationRejected(
                f"Job {job_id} cannot be canceled in status {job.status.value}",
            )
        if not self.repository.fail_job(job_id=job_id, error_message=CANCELED_MESSAGE):
            current = self.repository.require_job(job_id)
            raise JobCancellationRejected(
                f"Job {job_id} cannot be canceled in status {current.status.value}",
            )
        self.queue.cancel_pending(job_id=job_id)
        logger.info("Job %s canceled", job_id)
        return self.repository.require_job(job_id)

    def get_job_status(self, job_id: str) -> JobDetails:
        details = self.repository.get_job_details(job_id)
        if details is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return details

    def resubmit_job(self, job_id: str) -> JobSubmission:
        """Submit a fresh job with the same source, templates and provider."""

        job = self.repository.require_job(job_id)
        if not job.is_terminal:
            raise ValueError(
                f"Job {job_id} is still {job.status.value}; only terminal jobs can be resubmitted.",
            )
        return self.submit_job(
            SubmitJob(
                source_ref=job.source_ref,
                template_ids=job.template_ids,
                provider=job.provider,
                user_id=job.user_id,
                session_id=job.session_id,
                metadata={**job.metadata, "resubmittedFrom": job.job_id},
            ),
        )

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        return self.repository.list_jobs(status=status, limit=limit)
