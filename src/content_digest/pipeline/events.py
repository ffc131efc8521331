"""Progress, completion and error messages pushed to job observers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from content_digest.storage.common import epoch_millis, utc_now


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    job_id: str
    stage: str
    progress: int
    message: str
    timestamp: int = field(default_factory=epoch_millis)

    event_type = "progress"

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True, frozen=True)
class CompleteEvent:
    job_id: str
    results: tuple[dict[str, Any], ...]
    completed_at: datetime = field(default_factory=utc_now)

    event_type = "complete"

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "results": [dict(item) for item in self.results],
            "completedAt": self.completed_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    job_id: str
    error: str
    stage: str
    failed_at: int = field(default_factory=epoch_millis)

    event_type = "error"

    def to_payload(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "error": self.error,
            "stage": self.stage,
            "failedAt": self.failed_at,
        }


JobEvent = Union[ProgressEvent, CompleteEvent, ErrorEvent]
