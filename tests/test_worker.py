from __future__ import annotations

import threading
import time
from collections.abc import Callable

import allure
from conftest import FakeGateway, RecordingSink, ScriptedProvider

from content_digest.pipeline.errors import (
    PersistenceError,
    ProviderAuthError,
    ProviderQuotaError,
    ProviderRequestError,
    ProviderTransientError,
)
from content_digest.pipeline.events import CompleteEvent, ErrorEvent, ProgressEvent
from content_digest.pipeline.failure_classifier import provider_error_from_failure
from content_digest.pipeline.models import (
    JobEnvelope,
    JobStatus,
    NormalizedText,
    PromptTaskStatus,
    QueueMessageStatus,
)
from content_digest.pipeline.queue import SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.worker import (
    INFRASTRUCTURE_ERROR_MESSAGE,
    QUOTA_FAILURE_MESSAGE,
    PipelineWorker,
    WorkerPool,
)

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Worker Processing"),
]


def _quota() -> ProviderQuotaError:
    return ProviderQuotaError(
        "RESOURCE_EXHAUSTED: quota exceeded",
        provider="echo",
        status_code=429,
    )


def _progress_values(sink: RecordingSink, job_id: str) -> list[int]:
    return [event.progress for event in sink.of_type("progress", job_id)]


def _task_statuses(repository: JobRepository, job_id: str) -> dict[str, PromptTaskStatus]:
    return {task.template_id: task.status for task in repository.list_prompt_tasks(job_id)}


def test_worker_completes_job_with_ordered_results(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    text = " ".join(f"word{index}" for index in range(500))
    job = submit_job(("summary", "keypoints"))
    worker = make_worker(gateway=FakeGateway(text=text), concurrency=2)

    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.progress == 100
    assert stored.current_stage == "completed"
    assert stored.processing_started_at is not None
    assert stored.processing_completed_at is not None

    extracted = repository.get_extracted_content(job.job_id)
    assert extracted is not None
    assert extracted.word_count == 500

    complete_events = sink.of_type("complete", job.job_id)
    assert len(complete_events) == 1
    event = complete_events[0]
    assert isinstance(event, CompleteEvent)
    assert [item["templateId"] for item in event.results] == ["summary", "keypoints"]
    assert all(item["status"] == "completed" for item in event.results)
    assert event.results[0]["content"] == "summary result"
    assert event.results[0]["tokensUsed"] == 500
    assert not sink.of_type("error", job.job_id)


def test_progress_is_monotonic_and_reaches_100_only_on_completion(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    job = submit_job(("summary", "keypoints", "analysis"))
    make_worker().run_once()

    values = _progress_values(sink, job.job_id)
    assert values == sorted(values)
    assert values[0] == 5
    assert 20 in values
    assert values[-1] == 90
    assert repository.require_job(job.job_id).progress == 100

    stages = [event.stage for event in sink.of_type("progress", job.job_id)]
    assert stages[0] == "extracting"
    assert stages[-1] == "finalizing"


def test_quota_error_skips_pending_tasks_and_keeps_completed_ones(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(script={"keypoints": [_quota()]})
    job = submit_job(("summary", "keypoints", "analysis", "qa"))

    make_worker(provider).run_once()

    tasks = repository.list_prompt_tasks(job.job_id)
    assert [task.template_id for task in tasks] == ["summary", "keypoints", "analysis", "qa"]
    assert [task.status for task in tasks] == [
        PromptTaskStatus.COMPLETED,
        PromptTaskStatus.FAILED,
        PromptTaskStatus.SKIPPED_QUOTA,
        PromptTaskStatus.SKIPPED_QUOTA,
    ]
    assert tasks[0].content == "summary result"
    assert tasks[1].error_message == "quota_exceeded"
    assert provider.call_count("analysis") == 0
    assert provider.call_count("qa") == 0

    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.progress == 100

    (event,) = sink.of_type("complete", job.job_id)
    assert [item["status"] for item in event.results] == [
        "completed",
        "failed",
        "skipped_quota",
        "skipped_quota",
    ]
    assert event.results[1]["error"] == "quota_exceeded"

    details = repository.get_job_details(job.job_id)
    assert details is not None
    assert "provider_halt" in [item.event_type for item in details.events]


def test_provider_halt_event_records_classifier_diagnostics(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    quota = provider_error_from_failure(
        provider="echo",
        status_code=None,
        message="Billing hard limit has been reached",
    )
    provider = ScriptedProvider(script={"summary": [quota]})
    job = submit_job(("summary", "qa"))

    make_worker(provider).run_once()

    details = repository.get_job_details(job.job_id)
    assert details is not None
    (halt,) = [item for item in details.events if item.event_type == "provider_halt"]
    assert halt.details["template_id"] == "summary"
    assert halt.details["reason"] == "QuotaExceeded"
    assert halt.details["classifier_version"] == 1
    assert halt.details["failure_class"] == "quota_exceeded"
    assert halt.details["matched_rule"] == "quota_exceeded"
    assert halt.details["matched_pattern"] == "billing"


def test_quota_error_without_any_success_fails_job(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(script={"summary": [_quota()]})
    job = submit_job(("summary", "keypoints"))

    make_worker(provider).run_once()

    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == QUOTA_FAILURE_MESSAGE
    assert stored.progress < 100
    assert _task_statuses(repository, job.job_id) == {
        "summary": PromptTaskStatus.FAILED,
        "keypoints": PromptTaskStatus.SKIPPED_QUOTA,
    }
    (error_event,) = sink.of_type("error", job.job_id)
    assert isinstance(error_event, ErrorEvent)
    assert error_event.error == QUOTA_FAILURE_MESSAGE
    assert not sink.of_type("complete", job.job_id)


def test_transient_errors_retry_three_times_with_exact_backoff(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(
        script={"summary": [ProviderTransientError("503 overloaded", provider="echo")]},
    )
    sleeps: list[float] = []
    job = submit_job(("summary", "keypoints"))

    make_worker(provider, sleeps=sleeps).run_once()

    assert sleeps == [2.0, 4.0, 8.0]
    assert provider.call_count("summary") == 4
    tasks = {task.template_id: task for task in repository.list_prompt_tasks(job.job_id)}
    assert tasks["summary"].status is PromptTaskStatus.FAILED
    assert tasks["summary"].attempts == 4
    assert tasks["summary"].error_message is not None
    assert tasks["summary"].error_message.startswith("transient error after 4 attempts")
    assert tasks["keypoints"].status is PromptTaskStatus.COMPLETED
    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED


def test_transient_error_recovers_on_retry(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(
        script={
            "summary": [ProviderTransientError("timeout", provider="echo"), "recovered"],
        },
    )
    sleeps: list[float] = []
    job = submit_job(("summary",))

    make_worker(provider, sleeps=sleeps).run_once()

    (task,) = repository.list_prompt_tasks(job.job_id)
    assert task.status is PromptTaskStatus.COMPLETED
    assert task.content == "recovered"
    assert task.attempts == 2
    assert sleeps == [2.0]


def test_extraction_error_fails_job_without_tasks(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider()
    job = submit_job(("summary", "keypoints"))

    summary = make_worker(provider, gateway=FakeGateway(error="source not found")).run_once()

    assert summary.failed == 1
    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == "extraction failed: source not found"
    assert repository.list_prompt_tasks(job.job_id) == []
    assert provider.calls == []
    (error_event,) = sink.of_type("error", job.job_id)
    assert error_event.stage == "extracting"
    assert task_queue.stats()["acked"] == 1


def test_auth_error_aborts_job_and_marks_remaining_tasks(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(
        script={"summary": [ProviderAuthError("API key not valid", provider="echo")]},
    )
    job = submit_job(("summary", "keypoints", "analysis"))

    make_worker(provider).run_once()

    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == "provider configuration error: API key not valid"
    tasks = repository.list_prompt_tasks(job.job_id)
    assert all(task.status is PromptTaskStatus.FAILED for task in tasks)
    assert tasks[1].error_message == "not attempted: job aborted"
    assert provider.call_count("keypoints") == 0
    assert len(sink.of_type("error", job.job_id)) == 1
    assert not sink.of_type("complete", job.job_id)


def test_rejected_request_fails_only_that_task(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(
        script={"keypoints": [ProviderRequestError("invalid argument", provider="echo")]},
    )
    job = submit_job(("summary", "keypoints", "analysis"))

    make_worker(provider).run_once()

    assert _task_statuses(repository, job.job_id) == {
        "summary": PromptTaskStatus.COMPLETED,
        "keypoints": PromptTaskStatus.FAILED,
        "analysis": PromptTaskStatus.COMPLETED,
    }
    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED


def test_job_without_successes_but_no_quota_event_completes(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    rejected = ProviderRequestError("bad request", provider="echo")
    provider = ScriptedProvider(script={"summary": [rejected], "keypoints": [rejected]})
    job = submit_job(("summary", "keypoints"))

    make_worker(provider).run_once()

    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED
    (event,) = sink.of_type("complete", job.job_id)
    assert [item["status"] for item in event.results] == ["failed", "failed"]


def test_unknown_template_fails_job_before_tasks(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    job = submit_job(("summary", "nonexistent"))

    make_worker().run_once()

    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message is not None
    assert "nonexistent" in stored.error_message
    assert repository.list_prompt_tasks(job.job_id) == []


def test_every_terminal_job_has_one_terminal_task_per_template(
    repository: JobRepository,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(
        script={
            "keypoints": [ProviderRequestError("bad request", provider="echo")],
            "learning": [_quota()],
        },
    )
    jobs = [
        submit_job(("summary", "keypoints")),
        submit_job(("analysis", "learning", "qa")),
        submit_job(("summary", "analysis", "qa", "keypoints", "learning")),
    ]
    worker = make_worker(provider)

    worker.run_loop(max_idle_polls=1)

    for job in jobs:
        stored = repository.require_job(job.job_id)
        assert stored.is_terminal
        tasks = repository.list_prompt_tasks(job.job_id)
        assert len(tasks) == len(job.template_ids)
        assert all(task.is_terminal for task in tasks)
        assert [task.template_id for task in tasks] == list(job.template_ids)


def test_redelivered_job_resumes_from_persisted_tasks(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    job = submit_job(("summary", "keypoints"))

    # A first worker claims the job, extracts and finishes one task, then dies.
    crashed = task_queue.dequeue(worker_id="crashed", visibility_timeout_seconds=0)
    assert crashed is not None
    repository.start_processing(job_id=job.job_id, worker_id="crashed")
    repository.save_extracted_content(
        job_id=job.job_id,
        content=NormalizedText(text="stored text", language="en", word_count=2, source_kind="test"),
    )
    repository.create_prompt_tasks(
        job_id=job.job_id,
        template_ids=["summary", "keypoints"],
        provider="echo",
    )
    repository.complete_prompt_task(
        job_id=job.job_id,
        template_id="summary",
        content="from first delivery",
        tokens_used=2,
        processing_time_ms=10,
        model="echo",
        attempts=1,
    )

    provider = ScriptedProvider()
    gateway = FakeGateway()
    summary = make_worker(provider, gateway=gateway, worker_id="worker-2").run_once()

    assert summary.completed == 1
    assert gateway.calls == []
    assert provider.calls == ["keypoints"]
    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.COMPLETED
    assert stored.worker_id == "worker-2"
    (event,) = sink.of_type("complete", job.job_id)
    assert event.results[0]["content"] == "from first delivery"
    assert event.results[1]["content"] == "keypoints result"
    assert task_queue.get_message(crashed.message_id).delivery_count == 2


def test_infrastructure_error_is_nacked_and_job_resumes(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    class FlakyGateway(FakeGateway):
        def extract(self, source_ref: str) -> NormalizedText:
            if not self.calls:
                self.calls.append(source_ref)
                raise PersistenceError("database is locked")
            return super().extract(source_ref)

    job = submit_job(("summary",))
    worker = make_worker(gateway=FlakyGateway())

    first = worker.run_once()
    assert first.requeued == 1
    assert first.failed == 0
    assert repository.require_job(job.job_id).status is JobStatus.PROCESSING

    second = worker.run_once()
    assert second.completed == 1
    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED
    assert task_queue.stats()["acked"] == 1


def test_exhausted_redeliveries_fail_job_with_infrastructure_error(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    class BrokenGateway(FakeGateway):
        def extract(self, source_ref: str) -> NormalizedText:
            self.calls.append(source_ref)
            raise RuntimeError("disk full")

    gateway = BrokenGateway()
    job = submit_job(("summary",))
    worker = make_worker(gateway=gateway)

    summaries = [worker.run_once() for _ in range(3)]

    assert [item.requeued for item in summaries] == [1, 1, 0]
    assert summaries[-1].dead_lettered == 1
    assert len(gateway.calls) == 3
    stored = repository.require_job(job.job_id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == INFRASTRUCTURE_ERROR_MESSAGE
    (message,) = task_queue.list_messages(job_id=job.job_id)
    assert message.status is QueueMessageStatus.DEAD
    assert message.last_error == "RuntimeError: disk full"
    (error_event,) = sink.of_type("error", job.job_id)
    assert error_event.error == INFRASTRUCTURE_ERROR_MESSAGE


def test_redelivery_of_terminal_job_is_acknowledged_without_work(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider()
    job = submit_job(("summary",))
    worker = make_worker(provider)
    worker.run_once()

    task_queue.enqueue(
        JobEnvelope(job_id=job.job_id, source_ref=job.source_ref, template_ids=job.template_ids),
    )
    summary = worker.run_once()

    assert summary.skipped == 1
    assert provider.calls == ["summary"]
    assert task_queue.stats()["acked"] == 2


def test_concurrent_jobs_do_not_share_quota_state(
    repository: JobRepository,
    sink: RecordingSink,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    provider = ScriptedProvider(script={"qa": [_quota()]})
    first = submit_job(("summary", "keypoints", "analysis"))
    second = submit_job(("learning", "qa"))
    pool = WorkerPool(
        workers=[
            make_worker(provider, worker_id="worker-1"),
            make_worker(provider, worker_id="worker-2"),
        ],
        idle_wait_seconds=0.01,
    )

    with pool:
        assert pool.wait_until_idle(timeout=30)

    assert _task_statuses(repository, first.job_id) == {
        "summary": PromptTaskStatus.COMPLETED,
        "keypoints": PromptTaskStatus.COMPLETED,
        "analysis": PromptTaskStatus.COMPLETED,
    }
    assert _task_statuses(repository, second.job_id) == {
        "learning": PromptTaskStatus.COMPLETED,
        "qa": PromptTaskStatus.FAILED,
    }
    assert repository.require_job(first.job_id).status is JobStatus.COMPLETED
    assert repository.require_job(second.job_id).status is JobStatus.COMPLETED
    assert pool.summary.completed == 2
    for job in (first, second):
        values = _progress_values(sink, job.job_id)
        assert values == sorted(values)
        assert isinstance(sink.of_type("complete", job.job_id)[0], CompleteEvent)
    assert all(isinstance(event, ProgressEvent | CompleteEvent) for event in sink.events)


def test_heartbeat_keeps_lease_while_a_provider_call_outlasts_it(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    class SlowProvider(ScriptedProvider):
        def __init__(self) -> None:
            super().__init__()
            self.started = threading.Event()

        def generate(self, **kwargs):  # type: ignore[no-untyped-def]
            self.started.set()
            time.sleep(1.5)
            return super().generate(**kwargs)

    provider = SlowProvider()
    job = submit_job(("summary",))
    busy = make_worker(provider, worker_id="worker-1", visibility_timeout_seconds=1)
    idle = make_worker(provider, worker_id="worker-2", visibility_timeout_seconds=1)
    outcomes = []
    thread = threading.Thread(target=lambda: outcomes.append(busy.run_once()))

    thread.start()
    assert provider.started.wait(timeout=10)
    time.sleep(1.2)
    competing = idle.run_once()
    thread.join(timeout=30)

    assert competing.processed == 0
    assert competing.dead_lettered == 0
    assert provider.calls == ["summary"]
    assert outcomes[0].completed == 1
    assert repository.require_job(job.job_id).status is JobStatus.COMPLETED
    assert task_queue.stats()["acked"] == 1


def test_run_until_terminal_leaves_other_jobs_queued_and_waits_out_a_nack(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    submit_job: Callable,
    make_worker: Callable[..., PipelineWorker],
) -> None:
    class FlakyGateway(FakeGateway):
        def extract(self, source_ref: str) -> NormalizedText:
            if not self.calls:
                self.calls.append(source_ref)
                raise PersistenceError("database is locked")
            return super().extract(source_ref)

    other = submit_job(("summary",))
    watched = submit_job(("keypoints",), source_ref="https://example.com/watched")
    worker = make_worker(gateway=FlakyGateway())

    summary = worker.run_until_terminal(watched.job_id)

    assert summary.requeued == 1
    assert summary.completed == 1
    assert repository.require_job(watched.job_id).status is JobStatus.COMPLETED
    assert repository.require_job(other.job_id).status is JobStatus.PENDING
    (message,) = task_queue.list_messages(job_id=other.job_id)
    assert message.status is QueueMessageStatus.READY
