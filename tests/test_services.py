from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from conftest import build_catalog

from content_digest.pipeline.errors import (
    JobCancellationRejected,
    JobNotFoundError,
    UnknownTemplateError,
)
from content_digest.pipeline.models import JobStatus, QueueMessageStatus
from content_digest.pipeline.queue import SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.services import CANCELED_MESSAGE, JobService, SubmitJob
from content_digest.pipeline.templates import DEFAULT_TEMPLATES, TemplateCatalog
from content_digest.pipeline.worker import PipelineWorker

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Job Submission"),
]


@pytest.fixture()
def service(repository: JobRepository, task_queue: SqliteTaskQueue) -> JobService:
    return JobService(
        repository=repository,
        queue=task_queue,
        catalog=build_catalog(),
        default_provider="echo",
    )


def test_submit_persists_pending_job_and_enqueues_envelope(
    service: JobService,
    task_queue: SqliteTaskQueue,
) -> None:
    submission = service.submit_job(
        SubmitJob(
            source_ref="  https://example.com/post  ",
            template_ids=("summary", "qa"),
            user_id="user-1",
            metadata={"title": "Post"},
        ),
    )

    job = submission.job
    assert job.status is JobStatus.PENDING
    assert job.source_ref == "https://example.com/post"
    assert job.provider == "echo"
    assert job.metadata == {"title": "Post"}
    (message,) = task_queue.list_messages(job_id=job.job_id)
    assert message.message_id == submission.message_id
    assert message.status is QueueMessageStatus.READY
    assert message.envelope.template_ids == ("summary", "qa")
    assert message.envelope.user_id == "user-1"

    details = service.get_job_status(job.job_id)
    assert [event.event_type for event in details.events] == ["created", "enqueued"]


@pytest.mark.parametrize(
    ("command", "error_type", "message"),
    [
        (SubmitJob(source_ref=" ", template_ids=("summary",)), ValueError, "source_ref"),
        (SubmitJob(source_ref="a.txt", template_ids=()), ValueError, "At least one"),
        (
            SubmitJob(source_ref="a.txt", template_ids=("summary", "qa", "summary")),
            ValueError,
            "Duplicate template ids: summary",
        ),
        (
            SubmitJob(source_ref="a.txt", template_ids=("summary", "poem")),
            UnknownTemplateError,
            "poem",
        ),
        (
            SubmitJob(source_ref="a.txt", template_ids=("summary",), provider="claude"),
            ValueError,
            "Unsupported provider",
        ),
    ],
)
def test_invalid_submissions_create_nothing(
    service: JobService,
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    command: SubmitJob,
    error_type: type[Exception],
    message: str,
) -> None:
    with pytest.raises(error_type, match=message):
        service.submit_job(command)

    assert repository.list_jobs() == []
    assert task_queue.stats()["ready"] == 0


def test_cancel_pending_job_retires_its_message(
    service: JobService,
    task_queue: SqliteTaskQueue,
) -> None:
    submission = service.submit_job(SubmitJob(source_ref="a.txt", template_ids=("summary",)))

    canceled = service.cancel_job(submission.job.job_id)

    assert canceled.status is JobStatus.FAILED
    assert canceled.error_message == CANCELED_MESSAGE
    (message,) = task_queue.list_messages(job_id=submission.job.job_id)
    assert message.status is QueueMessageStatus.ACKED
    assert task_queue.dequeue(worker_id="w1") is None


def test_cancel_is_rejected_once_a_worker_claimed_the_job(
    service: JobService,
    repository: JobRepository,
) -> None:
    submission = service.submit_job(SubmitJob(source_ref="a.txt", template_ids=("summary",)))
    repository.start_processing(job_id=submission.job.job_id, worker_id="w1")

    with pytest.raises(JobCancellationRejected, match="processing"):
        service.cancel_job(submission.job.job_id)
    with pytest.raises(JobNotFoundError):
        service.cancel_job("missing")


def test_canceled_job_is_skipped_if_its_message_is_delivered(
    service: JobService,
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    submission = service.submit_job(SubmitJob(source_ref="a.txt", template_ids=("summary",)))
    job_id = submission.job.job_id
    # Simulate a worker leasing the message between the status check and the cancel.
    delivery = task_queue.dequeue(worker_id="w1", visibility_timeout_seconds=0)
    assert delivery is not None
    service.cancel_job(job_id)

    summary = make_worker().run_once()

    assert summary.skipped == 1
    assert repository.require_job(job_id).status is JobStatus.FAILED
    assert repository.list_prompt_tasks(job_id) == []


def test_resubmit_copies_a_terminal_job(service: JobService) -> None:
    original = service.submit_job(
        SubmitJob(source_ref="a.txt", template_ids=("summary", "qa"), metadata={"k": "v"}),
    ).job

    with pytest.raises(ValueError, match="only terminal jobs"):
        service.resubmit_job(original.job_id)

    service.cancel_job(original.job_id)
    resubmitted = service.resubmit_job(original.job_id).job

    assert resubmitted.job_id != original.job_id
    assert resubmitted.status is JobStatus.PENDING
    assert resubmitted.template_ids == ("summary", "qa")
    assert resubmitted.metadata == {"k": "v", "resubmittedFrom": original.job_id}
    assert [job.job_id for job in service.list_jobs(status=JobStatus.PENDING)] == [
        resubmitted.job_id,
    ]


def test_catalog_resolves_in_requested_order() -> None:
    catalog = TemplateCatalog()

    resolved = catalog.resolve(["qa", "summary"])

    assert [template.template_id for template in resolved] == ["qa", "summary"]
    assert len(catalog) == len(DEFAULT_TEMPLATES)
    assert "analysis" in catalog
    with pytest.raises(UnknownTemplateError) as excinfo:
        catalog.resolve(["summary", "poem", "haiku"])
    assert excinfo.value.template_ids == ["poem", "haiku"]


def test_catalog_file_overrides_and_extends_defaults(tmp_path: Path) -> None:
    path = tmp_path / "templates.json"
    path.write_text(
        json.dumps(
            {
                "templates": [
                    {"id": "summary", "name": "Short summary", "prompt": "Summarize in one line."},
                    {"id": "haiku", "prompt": "Write a haiku.", "category": "fun"},
                ],
            },
        ),
        encoding="utf-8",
    )

    catalog = TemplateCatalog.from_file(path)
    only_file = TemplateCatalog.from_file(path, include_defaults=False)

    summary = catalog.get("summary")
    assert summary is not None
    assert summary.prompt == "Summarize in one line."
    haiku = catalog.get("haiku")
    assert haiku is not None
    assert haiku.name == "haiku"
    assert haiku.category == "fun"
    assert len(catalog) == len(DEFAULT_TEMPLATES) + 1
    assert [template.template_id for template in only_file.list_templates()] == ["summary", "haiku"]


@pytest.mark.parametrize(
    ("payload", "error_type"),
    [
        ([], TypeError),
        ({"templates": {}}, TypeError),
        ({"templates": ["summary"]}, TypeError),
        ({"templates": [{"id": "", "prompt": "x"}]}, ValueError),
        ({"templates": [{"id": "x", "prompt": " "}]}, ValueError),
    ],
)
def test_catalog_file_validation(
    tmp_path: Path,
    payload: object,
    error_type: type[Exception],
) -> None:
    path = tmp_path / "templates.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(error_type):
        TemplateCatalog.from_file(path)
