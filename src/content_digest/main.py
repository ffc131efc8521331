"""CLI entrypoint for content-digest."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from content_digest import __version__
from content_digest.pipeline.controllers import (
    DigestCliController,
    ListJobsCommand,
    MutateJobCommand,
    QueueStatsCommand,
    StatusCommand,
    SubmitCommand,
    TemplatesCommand,
    WatchCommand,
    WorkerCommand,
)
from content_digest.pipeline.errors import PipelineError
from content_digest.pipeline.providers import SUPPORTED_PROVIDERS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DigestCliController()

_JOB_STATUSES = ["pending", "processing", "completed", "failed"]


@click.group()
@click.version_option(version=__version__, prog_name="content-digest")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def content_digest(log_level: str) -> None:
    """Turn a URL, video or document into AI-generated digests.

    Jobs are **submitted** to a durable queue and processed by a **worker** pool.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@content_digest.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--source", "source_ref", required=True, help="URL, YouTube link or local file.")
@click.option(
    "--template",
    "template_ids",
    multiple=True,
    required=True,
    help="Prompt template id. Repeat for several; results keep this order.",
)
@click.option(
    "--provider",
    type=click.Choice(list(SUPPORTED_PROVIDERS), case_sensitive=False),
    default=None,
    help="AI provider; defaults to CONTENT_DIGEST_PROVIDER.",
)
@click.option("--user-id", default=None, help="Optional caller user id.")
@click.option("--session-id", default=None, help="Optional caller session id.")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    source_ref: str,
    template_ids: tuple[str, ...],
    provider: str | None,
    user_id: str | None,
    session_id: str | None,
) -> None:
    """Create a job and enqueue it for the workers."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    source_ref=source_ref,
                    template_ids=template_ids,
                    provider=provider,
                    user_id=user_id,
                    session_id=session_id,
                ),
            ),
        ),
    )


@content_digest.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--drain",
    default=False,
    show_default=True,
    help="Run one claim-process cycle, or drain the queue with the worker pool.",
)
@click.option(
    "--serve",
    is_flag=True,
    default=False,
    help="Keep the pool running until SIGINT/SIGTERM instead of stopping when idle.",
)
@click.option(
    "--pool-size",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads; defaults to CONTENT_DIGEST_WORKER_POOL_SIZE.",
)
@click.option(
    "--idle-timeout",
    "idle_timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Give up draining after this many seconds.",
)
def worker(
    db_path: Path | None,
    once: bool,
    serve: bool,
    pool_size: int | None,
    idle_timeout_seconds: float | None,
) -> None:
    """Run pipeline workers."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    serve=serve,
                    pool_size=pool_size,
                    idle_timeout_seconds=idle_timeout_seconds,
                ),
            ),
        ),
    )


@content_digest.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_JOB_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, status=status, limit=limit)))


@content_digest.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the job record as JSON.")
def status(db_path: Path | None, job_id: str, as_json: bool) -> None:
    """Show one job with its prompt tasks and event history."""

    _emit_lines(CONTROLLER.status(StatusCommand(db_path=db_path, job_id=job_id, as_json=as_json)))


@content_digest.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job that no worker has claimed yet."""

    _emit_lines(CONTROLLER.cancel(MutateJobCommand(db_path=db_path, job_id=job_id)))


@content_digest.command("resubmit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Finished job to run again.")
def resubmit(db_path: Path | None, job_id: str) -> None:
    """Submit a new job with the source and templates of a finished one."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.resubmit(MutateJobCommand(db_path=db_path, job_id=job_id))),
    )


@content_digest.command("templates")
@click.option(
    "--templates-path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with extra templates; defaults to CONTENT_DIGEST_TEMPLATES_PATH.",
)
def templates(templates_path: Path | None) -> None:
    """List available prompt templates."""

    _emit_lines(CONTROLLER.templates(TemplatesCommand(templates_path=templates_path)))


@content_digest.command("queue-stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--purge",
    is_flag=True,
    default=False,
    help="Delete acked and dead messages older than CONTENT_DIGEST_QUEUE_PURGE_AFTER_DAYS.",
)
def queue_stats(db_path: Path | None, purge: bool) -> None:
    """Show queue message counts per status."""

    _emit_lines(CONTROLLER.queue_stats(QueueStatsCommand(db_path=db_path, purge=purge)))


@content_digest.command("watch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--source", "source_ref", required=True, help="URL, YouTube link or local file.")
@click.option("--template", "template_ids", multiple=True, required=True, help="Template id.")
@click.option(
    "--provider",
    type=click.Choice(list(SUPPORTED_PROVIDERS), case_sensitive=False),
    default=None,
    help="AI provider; use `echo` for an offline run.",
)
def watch(
    db_path: Path | None,
    source_ref: str,
    template_ids: tuple[str, ...],
    provider: str | None,
) -> None:
    """Run one job inline and stream its progress events as JSON lines."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.watch(
                WatchCommand(
                    db_path=db_path,
                    source_ref=source_ref,
                    template_ids=template_ids,
                    provider=provider,
                ),
                emit=click.echo,
            ),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, PipelineError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_digest()
