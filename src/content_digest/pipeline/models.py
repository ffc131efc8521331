"""Domain models for the job queue, job state and prompt tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Top-level job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Sub-stage labels layered on top of ``processing``."""

    EXTRACTING = "extracting"
    AI_PROCESSING = "ai_processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class PromptTaskStatus(str, Enum):
    """Per-template task states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_QUOTA = "skipped_quota"


class QueueMessageStatus(str, Enum):
    """Durable queue message states."""

    READY = "ready"
    IN_FLIGHT = "in_flight"
    ACKED = "acked"
    DEAD = "dead"


class FailureClass(str, Enum):
    """Normalized provider failure classes used by the retry policy."""

    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH_OR_CONFIG = "auth_or_config"
    REQUEST_REJECTED = "request_rejected"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
TERMINAL_TASK_STATUSES = frozenset(
    {PromptTaskStatus.COMPLETED, PromptTaskStatus.FAILED, PromptTaskStatus.SKIPPED_QUOTA},
)


@dataclass(slots=True, frozen=True)
class JobEnvelope:
    """Queue message representing one job to process."""

    job_id: str
    source_ref: str
    template_ids: tuple[str, ...]
    user_id: str | None = None
    session_id: str | None = None

    @property
    def idempotency_key(self) -> str:
        return self.job_id

    def to_payload(self) -> dict[str, Any]:
        """Serialize using the producer-facing enqueue payload keys."""

        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "sourceRef": self.source_ref,
            "templateIds": list(self.template_ids),
        }
        if self.user_id is not None:
            payload["userId"] = self.user_id
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        return payload

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> JobEnvelope:
        """Deserialize and validate an enqueue payload."""

        job_id = raw.get("jobId")
        source_ref = raw.get("sourceRef")
        template_ids = raw.get("templateIds")
        if not isinstance(job_id, str) or not job_id.strip():
            raise ValueError("envelope.jobId must be a non-empty string")
        if not isinstance(source_ref, str) or not source_ref.strip():
            raise ValueError("envelope.sourceRef must be a non-empty string")
        if not isinstance(template_ids, list) or not all(
            isinstance(item, str) and item.strip() for item in template_ids
        ):
            raise TypeError("envelope.templateIds must be an array of non-empty strings")
        user_id = raw.get("userId")
        session_id = raw.get("sessionId")
        if user_id is not None and not isinstance(user_id, str):
            raise TypeError("envelope.userId must be a string when provided")
        if session_id is not None and not isinstance(session_id, str):
            raise TypeError("envelope.sessionId must be a string when provided")
        return cls(
            job_id=job_id,
            source_ref=source_ref,
            template_ids=tuple(template_ids),
            user_id=user_id,
            session_id=session_id,
        )


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a pending job."""

    source_ref: str
    template_ids: tuple[str, ...]
    provider: str
    job_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobView:
    """Persisted job record."""

    job_id: str
    user_id: str | None
    session_id: str | None
    source_ref: str
    provider: str
    template_ids: tuple[str, ...]
    status: JobStatus
    progress: int
    current_stage: str | None
    error_message: str | None
    metadata: dict[str, Any]
    worker_id: str | None
    created_at: datetime
    updated_at: datetime
    processing_started_at: datetime | None
    processing_completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_record(self) -> dict[str, Any]:
        """Caller-visible job record."""

        return {
            "id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "currentStage": self.current_stage,
            "errorMessage": self.error_message,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "processingStartedAt": (
                self.processing_started_at.isoformat() if self.processing_started_at else None
            ),
            "processingCompletedAt": (
                self.processing_completed_at.isoformat()
                if self.processing_completed_at
                else None
            ),
        }


@dataclass(slots=True)
class PromptTaskView:
    """Persisted (job, template) task."""

    task_id: int
    job_id: str
    template_id: str
    position: int
    status: PromptTaskStatus
    content: str
    error_message: str | None
    tokens_used: int | None
    processing_time_ms: int | None
    provider: str
    model: str | None
    attempts: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_result(self) -> dict[str, Any]:
        """Result entry of the completion event."""

        result: dict[str, Any] = {
            "templateId": self.template_id,
            "content": self.content,
            "status": self.status.value,
        }
        if self.error_message is not None:
            result["error"] = self.error_message
        if self.tokens_used is not None:
            result["tokensUsed"] = self.tokens_used
        if self.processing_time_ms is not None:
            result["processingTimeMs"] = self.processing_time_ms
        return result


@dataclass(slots=True)
class ExtractedContentView:
    """Normalized text stored once per job."""

    job_id: str
    text: str
    language: str
    word_count: int
    source_kind: str
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job audit trail entry."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its tasks, extracted content and event stream."""

    job: JobView
    tasks: list[PromptTaskView]
    extracted: ExtractedContentView | None
    events: list[JobEventView]


@dataclass(slots=True)
class QueueMessageView:
    """Readable queue message row."""

    message_id: str
    idempotency_key: str
    job_id: str
    envelope: JobEnvelope
    status: QueueMessageStatus
    delivery_count: int
    max_deliveries: int
    visible_after: datetime
    lease_expires_at: datetime | None
    worker_id: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class QueueDelivery:
    """One leased delivery handed to a worker."""

    message_id: str
    envelope: JobEnvelope
    delivery_count: int
    max_deliveries: int
    worker_id: str
    lease_expires_at: datetime

    @property
    def is_last_delivery(self) -> bool:
        return self.delivery_count >= self.max_deliveries


@dataclass(slots=True)
class NackOutcome:
    """Result of returning a delivery to the queue after an infrastructure failure."""

    requeued: bool
    dead: bool
    visible_after: datetime | None = None


@dataclass(slots=True)
class NormalizedText:
    """Text produced by the extraction gateway for one source reference."""

    text: str
    language: str
    word_count: int
    source_kind: str
    metadata: dict[str, Any] = field(default_factory=dict)
