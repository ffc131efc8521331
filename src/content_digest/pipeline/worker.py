"""Queue consumers that run jobs end to end.

One ``PipelineWorker`` processes one job at a time:

1. recover expired leases (dead-lettered jobs are failed here);
2. lease an envelope and claim its job;
3. extract the source text once and persist it;
4. create the prompt tasks and run the pending ones through the orchestrator;
5. persist each result as it arrives and push progress;
6. finalize the job and acknowledge the envelope.

Business failures (extraction, auth, unknown templates) fail the job and
acknowledge the envelope. Infrastructure failures nack the envelope so the
queue redelivers it; a redelivered job resumes from its persisted tasks.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from content_digest.extraction.gateway import ExtractionGateway
from content_digest.pipeline.broadcaster import EventSink
from content_digest.pipeline.errors import (
    ExtractionError,
    PersistenceError,
    QueueDeliveryError,
    UnknownTemplateError,
)
from content_digest.pipeline.events import CompleteEvent, ErrorEvent, ProgressEvent
from content_digest.pipeline.models import (
    JobStage,
    JobView,
    PromptTaskStatus,
    QueueDelivery,
    QueueMessageStatus,
)
from content_digest.pipeline.orchestrator import (
    QUOTA_EXCEEDED_REASON,
    FatalFailure,
    PromptTaskResult,
    QuotaExceeded,
    sort_results,
)
from content_digest.pipeline.progress import (
    EXTRACTION_DONE_PROGRESS,
    EXTRACTION_STARTED_PROGRESS,
    FINALIZING_PROGRESS,
    ProgressPlan,
)
from content_digest.pipeline.queue import DEFAULT_VISIBILITY_TIMEOUT_SECONDS, SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.routing import ProviderRouter
from content_digest.pipeline.templates import TemplateCatalog

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERROR_MESSAGE = "infrastructure error: delivery attempts exhausted"
QUOTA_FAILURE_MESSAGE = "provider quota exceeded before any template succeeded"


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.skipped += other.skipped
        self.requeued += other.requeued
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


class PipelineWorker:
    """Consumes envelopes and drives each job through the state machine."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: SqliteTaskQueue,
        gateway: ExtractionGateway,
        router: ProviderRouter,
        catalog: TemplateCatalog,
        events: EventSink,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        heartbeat_interval_seconds: float | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.gateway = gateway
        self.router = router
        self.catalog = catalog
        self.events = events
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        if heartbeat_interval_seconds is None:
            heartbeat_interval_seconds = visibility_timeout_seconds / 3
        self.heartbeat_interval_seconds = max(heartbeat_interval_seconds, 0.05)
        self._stop_requested = False

    def run_once(self, *, job_id: str | None = None) -> WorkerRunSummary:
        """Process at most one envelope from the queue, optionally of one job only."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.dead_lettered += self._reap_expired()
        delivery = self.queue.dequeue(
            worker_id=self.worker_id,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
            job_id=job_id,
        )
        if delivery is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Worker %s picked job %s (delivery %d/%d)",
            self.worker_id,
            delivery.envelope.job_id,
            delivery.delivery_count,
            delivery.max_deliveries,
        )
        try:
            with self._lease_heartbeat(delivery):
                outcome = self.process_delivery(delivery)
        except Exception as error:
            logger.exception(
                "Job %s failed with an infrastructure error on delivery %d",
                delivery.envelope.job_id,
                delivery.delivery_count,
            )
            self._return_to_queue(delivery, error=error, summary=summary)
            return summary

        self.queue.ack(delivery)
        if outcome is JobOutcome.COMPLETED:
            summary.completed = 1
        elif outcome is JobOutcome.FAILED:
            summary.failed = 1
        else:
            summary.skipped = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle or ``max_jobs`` envelopes were processed.

        Args:
            max_jobs: Stop after processing this many envelopes (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with signal_handlers(lambda _name: self.request_stop()):
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def run_until_terminal(self, job_id: str) -> WorkerRunSummary:
        """Process deliveries of one job until it is completed or failed.

        Other jobs in the queue are left alone. A delivery nacked into backoff
        is waited for. Returns early when the job has no live message left.
        """

        aggregate = WorkerRunSummary()
        with signal_handlers(lambda _name: self.request_stop()):
            while not self._stop_requested:
                aggregate.add(self.run_once(job_id=job_id))
                if self.repository.require_job(job_id).is_terminal:
                    break
                live = [
                    message
                    for message in self.queue.list_messages(job_id=job_id)
                    if message.status in (QueueMessageStatus.READY, QueueMessageStatus.IN_FLIGHT)
                ]
                if not live:
                    logger.warning("Job %s is not terminal but has no queued message", job_id)
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        return aggregate

    def request_stop(self) -> None:
        """Finish the current job, then stop taking new ones."""

        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def process_delivery(self, delivery: QueueDelivery) -> JobOutcome:
        """Run the job behind one delivery. Raises on infrastructure errors."""

        job_id = delivery.envelope.job_id
        existing = self.repository.get_job(job_id)
        if existing is None:
            logger.warning("Job %s does not exist; dropping envelope %s", job_id, delivery.message_id)
            return JobOutcome.SKIPPED
        if existing.is_terminal:
            logger.info("Job %s is already %s; acknowledging redelivery", job_id, existing.status.value)
            return JobOutcome.SKIPPED

        job = self.repository.start_processing(job_id=job_id, worker_id=self.worker_id)
        if job is None:
            logger.info("Job %s left the processing path concurrently", job_id)
            return JobOutcome.SKIPPED

        text = self._extracted_text(job, delivery)
        if text is None:
            return JobOutcome.FAILED
        return self._run_prompts(job, text=text, delivery=delivery)

    def _extracted_text(self, job: JobView, delivery: QueueDelivery) -> str | None:
        stored = self.repository.get_extracted_content(job.job_id)
        if stored is not None:
            logger.info("Job %s reuses extracted content from an earlier delivery", job.job_id)
            self._progress(
                job.job_id,
                EXTRACTION_DONE_PROGRESS,
                JobStage.AI_PROCESSING,
                "Content already extracted",
            )
            return stored.text

        self._progress(
            job.job_id,
            EXTRACTION_STARTED_PROGRESS,
            JobStage.EXTRACTING,
            "Extracting content",
        )
        try:
            normalized = self.gateway.extract(job.source_ref)
        except ExtractionError as error:
            logger.warning("Extraction failed for job %s: %s", job.job_id, error)
            self._fail(job.job_id, f"extraction failed: {error}", JobStage.EXTRACTING)
            return None

        saved = self.repository.save_extracted_content(job_id=job.job_id, content=normalized)
        self._touch(delivery)
        self._progress(
            job.job_id,
            EXTRACTION_DONE_PROGRESS,
            JobStage.AI_PROCESSING,
            f"Extracted {saved.word_count} words ({saved.language})",
        )
        return saved.text

    def _run_prompts(self, job: JobView, *, text: str, delivery: QueueDelivery) -> JobOutcome:
        template_ids = list(job.template_ids or delivery.envelope.template_ids)
        try:
            templates = self.catalog.resolve(template_ids)
        except UnknownTemplateError as error:
            return self._fail(job.job_id, str(error), JobStage.AI_PROCESSING)
        try:
            resolved = self.router.resolve(job.provider)
        except ValueError as error:
            return self._fail(job.job_id, str(error), JobStage.AI_PROCESSING)

        tasks = self.repository.create_prompt_tasks(
            job_id=job.job_id,
            template_ids=template_ids,
            provider=resolved.config.name,
        )
        plan = ProgressPlan(template_count=len(tasks))
        pending = [task for task in tasks if task.status is PromptTaskStatus.PENDING]
        terminal_count = len(tasks) - len(pending)
        if terminal_count:
            logger.info(
                "Job %s resumes with %d of %d tasks already terminal",
                job.job_id,
                terminal_count,
                len(tasks),
            )
            self._progress(
                job.job_id,
                plan.after_tasks(terminal_count),
                JobStage.AI_PROCESSING,
                f"Resuming ({terminal_count}/{len(tasks)} done)",
            )

        by_id = {template.template_id: template for template in templates}
        abort_cause: str | None = None
        streamed: list[PromptTaskResult] = []
        results = resolved.orchestrator.run(
            text,
            [by_id[task.template_id] for task in pending],
            resolved.config,
            positions=[task.position for task in pending],
        )
        with closing(results):
            for result in results:
                self._persist_result(job.job_id, result)
                streamed.append(result)
                if isinstance(result.outcome, FatalFailure) and abort_cause is None:
                    abort_cause = result.outcome.cause
                terminal_count += 1
                self._progress(
                    job.job_id,
                    plan.after_tasks(terminal_count),
                    JobStage.AI_PROCESSING,
                    f"{result.template_id}: {result.task_status.value} "
                    f"({terminal_count}/{len(tasks)})",
                )
                self._touch(delivery)

        if streamed:
            logger.info(
                "Job %s provider round: %s",
                job.job_id,
                ", ".join(
                    f"{result.template_id}={result.task_status.value}"
                    for result in sort_results(streamed, template_ids)
                ),
            )
        return self._finalize(job.job_id, abort_cause=abort_cause)

    def _persist_result(self, job_id: str, result: PromptTaskResult) -> None:
        status = result.task_status
        if status is PromptTaskStatus.COMPLETED:
            outcome = result.outcome
            changed = self.repository.complete_prompt_task(
                job_id=job_id,
                template_id=result.template_id,
                content=outcome.content,  # type: ignore[union-attr]
                tokens_used=outcome.tokens_used,  # type: ignore[union-attr]
                processing_time_ms=result.processing_time_ms,
                model=outcome.model,  # type: ignore[union-attr]
                attempts=result.attempts,
            )
        elif status is PromptTaskStatus.SKIPPED_QUOTA:
            changed = self.repository.skip_prompt_task(
                job_id=job_id,
                template_id=result.template_id,
                error_message=result.error_message or "skipped",
            )
        else:
            changed = self.repository.fail_prompt_task(
                job_id=job_id,
                template_id=result.template_id,
                error_message=result.error_message or "failed",
                processing_time_ms=result.processing_time_ms,
                attempts=result.attempts,
            )
            if isinstance(result.outcome, QuotaExceeded | FatalFailure):
                self.repository.add_job_event(
                    job_id=job_id,
                    event_type="provider_halt",
                    details=_halt_details(result),
                )
        if not changed:
            logger.warning(
                "Task %s of job %s was already terminal; result discarded",
                result.template_id,
                job_id,
            )

    def _finalize(self, job_id: str, *, abort_cause: str | None) -> JobOutcome:
        if abort_cause is not None:
            return self._fail(
                job_id,
                f"provider configuration error: {abort_cause}",
                JobStage.AI_PROCESSING,
            )

        self._progress(job_id, FINALIZING_PROGRESS, JobStage.FINALIZING, "Aggregating results")
        tasks = self.repository.list_prompt_tasks(job_id)
        succeeded = any(task.status is PromptTaskStatus.COMPLETED for task in tasks)
        quota_hit = any(
            task.status is PromptTaskStatus.SKIPPED_QUOTA
            or task.error_message == QUOTA_EXCEEDED_REASON
            for task in tasks
        )
        if quota_hit and not succeeded:
            return self._fail(job_id, QUOTA_FAILURE_MESSAGE, JobStage.FINALIZING)

        if not self.repository.complete_job(job_id=job_id):
            logger.warning("Job %s could not be completed: no longer processing", job_id)
            return JobOutcome.SKIPPED
        self.events.send(
            CompleteEvent(job_id=job_id, results=tuple(task.to_result() for task in tasks)),
        )
        logger.info(
            "Job %s completed: %d/%d templates succeeded",
            job_id,
            sum(1 for task in tasks if task.status is PromptTaskStatus.COMPLETED),
            len(tasks),
        )
        return JobOutcome.COMPLETED

    def _fail(self, job_id: str, message: str, stage: JobStage) -> JobOutcome:
        if self.repository.fail_job(job_id=job_id, error_message=message, stage=stage):
            self.events.send(ErrorEvent(job_id=job_id, error=message, stage=stage.value))
            logger.info("Job %s failed at %s: %s", job_id, stage.value, message)
        return JobOutcome.FAILED

    def _progress(self, job_id: str, progress: int, stage: JobStage, message: str) -> None:
        stored = self.repository.update_progress(job_id=job_id, progress=progress, stage=stage)
        if stored is None:
            return
        self.events.send(
            ProgressEvent(job_id=job_id, stage=stage.value, progress=stored, message=message),
        )

    @contextmanager
    def _lease_heartbeat(self, delivery: QueueDelivery) -> Iterator[None]:
        """Keep extending the lease while a long provider call blocks the worker."""

        stopped = threading.Event()

        def _beat() -> None:
            while not stopped.wait(self.heartbeat_interval_seconds):
                try:
                    self._touch(delivery)
                except QueueDeliveryError:
                    logger.exception(
                        "Heartbeat for message %s (job %s) failed",
                        delivery.message_id,
                        delivery.envelope.job_id,
                    )

        thread = threading.Thread(
            target=_beat,
            daemon=True,
            name=f"heartbeat-{self.worker_id}",
        )
        thread.start()
        try:
            yield
        finally:
            stopped.set()
            thread.join()

    def _touch(self, delivery: QueueDelivery) -> None:
        if not self.queue.touch(
            delivery,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
        ):
            logger.warning(
                "Lease on message %s for job %s was lost; another worker may redeliver it",
                delivery.message_id,
                delivery.envelope.job_id,
            )

    def _return_to_queue(
        self,
        delivery: QueueDelivery,
        *,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        outcome = self.queue.nack(delivery, error=f"{type(error).__name__}: {error}")
        if outcome.dead:
            summary.dead_lettered += 1
            self._fail_dead_lettered(delivery.envelope.job_id)
        elif outcome.requeued:
            summary.requeued = 1

    def _reap_expired(self) -> int:
        dead = self.queue.reap_expired()
        for message in dead:
            self._fail_dead_lettered(message.job_id)
        return len(dead)

    def _fail_dead_lettered(self, job_id: str) -> None:
        try:
            job = self.repository.get_job(job_id)
            stage = job.current_stage if job is not None else None
            failed = self.repository.fail_job(
                job_id=job_id,
                error_message=INFRASTRUCTURE_ERROR_MESSAGE,
                stage=stage,
            )
        except PersistenceError:
            logger.exception("Could not mark dead-lettered job %s as failed", job_id)
            return
        if failed:
            self.events.send(
                ErrorEvent(
                    job_id=job_id,
                    error=INFRASTRUCTURE_ERROR_MESSAGE,
                    stage=stage or JobStage.FAILED.value,
                ),
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


class WorkerPool:
    """Fixed-size pool of worker threads sharing the queue and the state store."""

    def __init__(
        self,
        *,
        workers: Sequence[PipelineWorker],
        idle_wait_seconds: float = 1.0,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        if not workers:
            raise ValueError("WorkerPool needs at least one worker")
        self.workers = list(workers)
        self.idle_wait_seconds = idle_wait_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.summary = WorkerRunSummary()

    @property
    def size(self) -> int:
        return len(self.workers)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for worker in self.workers:
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker,),
                daemon=True,
                name=f"pipeline-{worker.worker_id}",
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Worker pool started with %d workers", len(self._threads))

    def stop(self, *, timeout: float = 30.0) -> None:
        """Let every worker finish its current job, then join the threads."""

        self._stop.set()
        for worker in self.workers:
            worker.request_stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def wait_until_idle(self, *, timeout: float | None = None, poll_seconds: float = 0.1) -> bool:
        """Block until the queue has no ready or in-flight messages."""

        queue = self.workers[0].queue
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            stats = queue.stats()
            if stats.get("ready", 0) == 0 and stats.get("in_flight", 0) == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            if self._stop.wait(timeout=poll_seconds):
                return False

    def serve(self) -> WorkerRunSummary:
        """Run in the foreground until SIGINT/SIGTERM."""

        self.start()
        with signal_handlers(lambda _name: self._stop.set()):
            while not self._stop.wait(timeout=0.5):
                pass
        self.stop()
        return self.summary

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def _worker_loop(self, worker: PipelineWorker) -> None:
        while not self._stop.is_set() and not worker.stop_requested:
            try:
                summary = worker.run_once()
            except Exception:
                logger.exception("Worker %s error", worker.worker_id)
                self._stop.wait(timeout=self.error_backoff_seconds)
                continue
            with self._lock:
                self.summary.add(summary)
            if summary.processed == 0:
                self._stop.wait(timeout=self.idle_wait_seconds)


@contextmanager
def signal_handlers(on_signal: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``on_signal`` while the block runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, finishing current work", name)
        on_signal(name)

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        pass
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _halt_details(result: PromptTaskResult) -> dict[str, object]:
    outcome = result.outcome
    details: dict[str, object] = {
        "template_id": result.template_id,
        "provider": result.provider,
        "reason": type(outcome).__name__,
        "cause": outcome.cause,  # type: ignore[union-attr]
    }
    classification = getattr(outcome, "classification", None)
    if classification is not None:
        details.update(classification.to_event_details(provider=result.provider))
    return details
