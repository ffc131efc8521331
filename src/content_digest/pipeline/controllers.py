"""Controllers for job pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from pathlib import Path

from content_digest.config import Settings
from content_digest.extraction import DefaultExtractionGateway
from content_digest.http.fetcher import HttpFetcher
from content_digest.http.youtube_extractor import fetch_transcript
from content_digest.pipeline.broadcaster import BroadcastChannel, ProgressBroadcaster
from content_digest.pipeline.errors import JobCancellationRejected, JobNotFoundError
from content_digest.pipeline.events import JobEvent
from content_digest.pipeline.models import JobDetails, JobStatus
from content_digest.pipeline.queue import SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.routing import ProviderRouter
from content_digest.pipeline.services import JobService, SubmitJob
from content_digest.pipeline.templates import TemplateCatalog
from content_digest.pipeline.worker import PipelineWorker, WorkerPool, WorkerRunSummary


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    source_ref: str
    template_ids: tuple[str, ...]
    provider: str | None
    user_id: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution.

    ``once`` runs a single claim-process cycle in-process; otherwise a pool
    drains the queue, or keeps serving until a signal when ``serve`` is set.
    """

    db_path: Path | None
    once: bool
    serve: bool = False
    pool_size: int | None = None
    idle_timeout_seconds: float | None = None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class StatusCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    as_json: bool = False


@dataclass(slots=True)
class MutateJobCommand:
    """CLI input for cancel/resubmit operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class TemplatesCommand:
    """CLI input for template catalog listing."""

    templates_path: Path | None


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue counters and cleanup."""

    db_path: Path | None
    purge: bool = False


@dataclass(slots=True)
class WatchCommand:
    """CLI input for running one job inline with a live event stream."""

    db_path: Path | None
    source_ref: str
    template_ids: tuple[str, ...]
    provider: str | None


@dataclass(slots=True)
class PipelineComponents:
    """Wired collaborators sharing one database."""

    settings: Settings
    repository: JobRepository
    queue: SqliteTaskQueue
    catalog: TemplateCatalog
    service: JobService


class DigestCliController:
    """Coordinates submission, worker and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _components(settings) as components:
            submission = components.service.submit_job(
                SubmitJob(
                    source_ref=command.source_ref,
                    template_ids=command.template_ids,
                    provider=command.provider,
                    user_id=command.user_id,
                    session_id=command.session_id,
                ),
            )

        job = submission.job
        return [
            "Job submitted: "
            f"job_id={job.job_id} status={job.status.value} provider={job.provider}",
            f"Templates: {', '.join(job.template_ids)}",
            f"Message: {submission.message_id}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.pool_size is not None:
            settings.worker.pool_size = command.pool_size
        settings.validate_for_worker()
        with _components(settings) as components:
            broadcaster = ProgressBroadcaster()
            router = ProviderRouter(settings=settings.provider)
            gateway = _gateway(settings)
            try:
                if command.once:
                    worker = _worker(
                        components,
                        gateway=gateway,
                        router=router,
                        events=broadcaster,
                        index=1,
                    )
                    summary = worker.run_once()
                else:
                    summary = _run_pool(
                        components,
                        gateway=gateway,
                        router=router,
                        events=broadcaster,
                        serve=command.serve,
                        idle_timeout_seconds=command.idle_timeout_seconds,
                    )
            finally:
                router.close()
                gateway.close()

        return [_summary_line(summary)]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _components(settings) as components:
            jobs = components.service.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} progress={job.progress} "
                f"stage={job.current_stage or '-'} provider={job.provider} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _components(settings) as components:
            try:
                details = components.service.get_job_status(command.job_id)
            except JobNotFoundError:
                return [f"Job not found: {command.job_id}"]

        if command.as_json:
            return [json.dumps(_details_payload(details), ensure_ascii=False, indent=2)]
        return _render_details(details)

    def cancel(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _components(settings) as components:
            try:
                job = components.service.cancel_job(command.job_id)
            except JobNotFoundError:
                return [f"Job not found: {command.job_id}"]
            except JobCancellationRejected as error:
                return [f"Cancel rejected: {error}"]
        return [f"Job canceled: job_id={job.job_id} status={job.status.value}"]

    def resubmit(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _components(settings) as components:
            try:
                submission = components.service.resubmit_job(command.job_id)
            except JobNotFoundError:
                return [f"Job not found: {command.job_id}"]
        return [
            f"Job resubmitted: job_id={submission.job.job_id} from={command.job_id}",
            f"Message: {submission.message_id}",
        ]

    def templates(self, command: TemplatesCommand) -> list[str]:
        settings = Settings.from_env()
        if command.templates_path is not None:
            settings.templates_path = command.templates_path
        catalog = _catalog(settings)
        lines = [f"Templates: {len(catalog)}"]
        for template in catalog.list_templates():
            lines.append(f"  {template.template_id} [{template.category}] {template.name}")
        return lines

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _components(settings) as components:
            purged = None
            if command.purge:
                purged = components.queue.purge(
                    older_than=timedelta(days=settings.queue.purge_after_days),
                )
            counts = components.queue.stats()

        lines = ["Queue: " + " ".join(f"{status}={count}" for status, count in counts.items())]
        if purged is not None:
            lines.append(
                f"Purged {purged} finished messages older than "
                f"{settings.queue.purge_after_days} days",
            )
        return lines

    def watch(self, command: WatchCommand, *, emit: Callable[[str], None]) -> list[str]:
        """Submit one job, process it inline and stream its events through ``emit``."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with _components(settings) as components:
            submission = components.service.submit_job(
                SubmitJob(
                    source_ref=command.source_ref,
                    template_ids=command.template_ids,
                    provider=command.provider,
                ),
            )
            job_id = submission.job.job_id

            broadcaster = ProgressBroadcaster()

            def _observer(event: JobEvent) -> None:
                payload = {"event": event.event_type, **event.to_payload()}
                emit(json.dumps(payload, ensure_ascii=False))

            broadcaster.subscribe(job_id, _observer)
            router = ProviderRouter(settings=settings.provider)
            gateway = _gateway(settings)
            try:
                with BroadcastChannel(broadcaster) as channel:
                    worker = _worker(
                        components,
                        gateway=gateway,
                        router=router,
                        events=channel,
                        index=1,
                    )
                    summary = worker.run_until_terminal(job_id)
            finally:
                broadcaster.unsubscribe(job_id, _observer)
                router.close()
                gateway.close()
            job = components.repository.require_job(job_id)

        return [
            f"Job {job.job_id} finished: status={job.status.value} progress={job.progress}",
            _summary_line(summary),
        ]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _catalog(settings: Settings) -> TemplateCatalog:
    if settings.templates_path is not None:
        return TemplateCatalog.from_file(settings.templates_path)
    return TemplateCatalog()


def _gateway(settings: Settings) -> DefaultExtractionGateway:
    return DefaultExtractionGateway(
        fetcher=HttpFetcher(timeout_seconds=settings.extraction.fetch_timeout_seconds),
        transcript_fetcher=partial(
            fetch_transcript,
            languages=settings.extraction.transcript_languages,
        ),
        max_chars=settings.extraction.max_chars,
    )


def _worker(
    components: PipelineComponents,
    *,
    gateway: DefaultExtractionGateway,
    router: ProviderRouter,
    events: ProgressBroadcaster | BroadcastChannel,
    index: int,
) -> PipelineWorker:
    worker_settings = components.settings.worker
    return PipelineWorker(
        repository=components.repository,
        queue=components.queue,
        gateway=gateway,
        router=router,
        catalog=components.catalog,
        events=events,
        worker_id=f"{worker_settings.worker_id_prefix}-{index}",
        poll_interval_seconds=worker_settings.poll_interval_seconds,
        visibility_timeout_seconds=worker_settings.visibility_timeout_seconds,
    )


def _run_pool(  # noqa: PLR0913
    components: PipelineComponents,
    *,
    gateway: DefaultExtractionGateway,
    router: ProviderRouter,
    events: ProgressBroadcaster,
    serve: bool,
    idle_timeout_seconds: float | None,
) -> WorkerRunSummary:
    worker_settings = components.settings.worker
    pool = WorkerPool(
        workers=[
            _worker(components, gateway=gateway, router=router, events=events, index=index)
            for index in range(1, worker_settings.pool_size + 1)
        ],
        idle_wait_seconds=worker_settings.poll_interval_seconds,
    )
    if serve:
        return pool.serve()
    with pool:
        pool.wait_until_idle(timeout=idle_timeout_seconds)
    return pool.summary


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"failed={summary.failed} skipped={summary.skipped} "
        f"requeued={summary.requeued} dead_lettered={summary.dead_lettered} "
        f"idle_polls={summary.idle_polls}"
    )


def _details_payload(details: JobDetails) -> dict[str, object]:
    return {
        **details.job.to_record(),
        "sourceRef": details.job.source_ref,
        "provider": details.job.provider,
        "results": [task.to_result() for task in details.tasks],
    }


def _render_details(details: JobDetails) -> list[str]:
    job = details.job
    extracted = details.extracted
    lines = [
        f"Job: {job.job_id}",
        f"Source: {job.source_ref}",
        f"Status: {job.status.value}",
        f"Stage: {job.current_stage or '-'}",
        f"Progress: {job.progress}",
        f"Provider: {job.provider}",
        f"Error: {job.error_message or '-'}",
        (
            f"Extracted: {extracted.word_count} words language={extracted.language}"
            if extracted is not None
            else "Extracted: -"
        ),
        f"Tasks: {len(details.tasks)}",
    ]
    for task in details.tasks:
        tokens = task.tokens_used if task.tokens_used is not None else "-"
        lines.append(
            f"  [{task.position}] {task.template_id} status={task.status.value} "
            f"attempts={task.attempts} tokens={tokens} error={task.error_message or '-'}",
        )
    lines.append(f"Events: {len(details.events)}")
    for event in details.events:
        lines.append(
            f"  {event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from.value if event.status_from else '-'} -> "
            f"{event.status_to.value if event.status_to else '-'}",
        )
    return lines


@contextmanager
def _components(settings: Settings) -> Iterator[PipelineComponents]:
    repository = JobRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    queue = SqliteTaskQueue(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        max_deliveries=settings.queue.max_deliveries,
        retry_base_seconds=settings.queue.retry_base_seconds,
    )
    catalog = _catalog(settings)
    try:
        yield PipelineComponents(
            settings=settings,
            repository=repository,
            queue=queue,
            catalog=catalog,
            service=JobService(
                repository=repository,
                queue=queue,
                catalog=catalog,
                default_provider=settings.provider.default_provider,
            ),
        )
    finally:
        queue.close()
        repository.close()
