"""Job state store backed by SQLModel + SQLite.

Every state transition is a compare-and-set ``UPDATE ... WHERE status = ...``
so a redelivered envelope or a racing worker can never move a row twice.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from content_digest.pipeline.errors import JobNotFoundError, PersistenceError, PipelineError
from content_digest.pipeline.models import (
    ExtractedContentView,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStage,
    JobStatus,
    JobView,
    NormalizedText,
    PromptTaskStatus,
    PromptTaskView,
)
from content_digest.storage.alembic_runner import upgrade_head
from content_digest.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from content_digest.storage.sqlmodel_models import (
    ExtractedContentRow,
    JobEventRow,
    JobRow,
    PromptTaskRow,
)

DEFAULT_BUSY_TIMEOUT_MS = 5000


class JobRepository:
    """Jobs, prompt tasks, extracted content and the job event trail."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise PersistenceError(f"Schema migration failed: {error}") from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Job state store error: {error}") from error

    # Jobs

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with self._session() as session:
            row = JobRow(
                job_id=job_id,
                user_id=payload.user_id,
                session_id=payload.session_id,
                source_ref=payload.source_ref,
                provider=payload.provider,
                template_ids_json=json.dumps(list(payload.template_ids)),
                status=JobStatus.PENDING.value,
                progress=0,
                current_stage=None,
                metadata_json=_dump_json(payload.metadata),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "provider": payload.provider,
                    "template_ids": list(payload.template_ids),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.get(JobRow, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with self._session() as session:
            statement = select(JobRow).order_by(col(JobRow.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def start_processing(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Claim a job for a worker.

        ``pending -> processing`` stamps ``processing_started_at``. A job that is
        already ``processing`` is resumed by the new owner after a redelivery and
        keeps its original start time. Returns None for terminal or missing jobs.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    current_stage=JobStage.EXTRACTING.value,
                    worker_id=worker_id,
                    processing_started_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount == 1:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="processing_started",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id},
                )
                session.commit()
                return _to_job_view(self._get_row(session=session, job_id=job_id))

            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                )
                .values(worker_id=worker_id, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="processing_resumed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PROCESSING,
                details={"worker_id": worker_id},
            )
            session.commit()
            return _to_job_view(self._get_row(session=session, job_id=job_id))

    def update_progress(
        self,
        *,
        job_id: str,
        progress: int,
        stage: JobStage | None = None,
    ) -> int | None:
        """Advance progress of a processing job and return the stored value.

        Progress is written as ``max(stored, requested)`` so it never moves
        backwards. Returns None when the job is not processing.
        """

        requested = max(0, min(100, int(progress)))
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "progress": case(
                (col(JobRow.progress) < requested, requested),
                else_=col(JobRow.progress),
            ),
            "updated_at": now,
        }
        if stage is not None:
            values["current_stage"] = stage.value
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return self._get_row(session=session, job_id=job_id).progress

    def fail_job(
        self,
        *,
        job_id: str,
        error_message: str,
        stage: JobStage | str | None = None,
    ) -> bool:
        """Move a pending or processing job to ``failed``."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return False
            previous = JobStatus(row.status)
            if previous not in {JobStatus.PENDING, JobStatus.PROCESSING}:
                return False
            failed_stage = stage.value if isinstance(stage, JobStage) else stage
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == previous.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    current_stage=JobStage.FAILED.value,
                    error_message=error_message,
                    processing_completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=previous,
                status_to=JobStatus.FAILED,
                details={
                    "error_message": error_message,
                    "stage": failed_stage or row.current_stage,
                },
            )
            session.commit()
            return True

    def complete_job(self, *, job_id: str) -> bool:
        """Move a processing job to ``completed`` once all its tasks are terminal."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            open_tasks = session.exec(
                select(func.count())
                .select_from(PromptTaskRow)
                .where(
                    PromptTaskRow.job_id == job_id,
                    PromptTaskRow.status == PromptTaskStatus.PENDING.value,
                ),
            ).one()
            if open_tasks:
                raise PipelineError(
                    f"Job {job_id} cannot complete with {open_tasks} pending prompt task(s).",
                )
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    current_stage=JobStage.COMPLETED.value,
                    progress=100,
                    processing_completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def add_job_event(self, *, job_id: str, event_type: str, details: dict[str, object]) -> None:
        """Append an audit event without a status change."""

        with self._session() as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    # Prompt tasks

    def create_prompt_tasks(
        self,
        *,
        job_id: str,
        template_ids: Sequence[str],
        provider: str,
    ) -> list[PromptTaskView]:
        """Insert missing ``(job_id, template_id)`` rows and return all tasks of the job."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            existing = set(
                session.exec(
                    select(PromptTaskRow.template_id).where(PromptTaskRow.job_id == job_id),
                ).all(),
            )
            created: list[str] = []
            for position, template_id in enumerate(template_ids):
                if template_id in existing:
                    continue
                existing.add(template_id)
                created.append(template_id)
                session.add(
                    PromptTaskRow(
                        job_id=job_id,
                        template_id=template_id,
                        position=position,
                        status=PromptTaskStatus.PENDING.value,
                        content="",
                        provider=provider,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            if created:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="prompt_tasks_created",
                    status_from=None,
                    status_to=None,
                    details={"template_ids": created},
                )
            session.commit()
        return self.list_prompt_tasks(job_id)

    def list_prompt_tasks(self, job_id: str) -> list[PromptTaskView]:
        """Tasks of a job in template submission order."""

        with self._session() as session:
            rows = session.exec(
                select(PromptTaskRow)
                .where(PromptTaskRow.job_id == job_id)
                .order_by(col(PromptTaskRow.position).asc(), col(PromptTaskRow.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def complete_prompt_task(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        template_id: str,
        content: str,
        tokens_used: int | None,
        processing_time_ms: int | None,
        model: str | None,
        attempts: int,
    ) -> bool:
        """Record a successful provider result."""

        return self._finish_prompt_task(
            job_id=job_id,
            template_id=template_id,
            status=PromptTaskStatus.COMPLETED,
            values={
                "content": content,
                "error_message": None,
                "tokens_used": tokens_used,
                "processing_time_ms": processing_time_ms,
                "model": model,
                "attempts": attempts,
            },
        )

    def fail_prompt_task(
        self,
        *,
        job_id: str,
        template_id: str,
        error_message: str,
        processing_time_ms: int | None = None,
        attempts: int = 0,
    ) -> bool:
        """Record a failed provider call."""

        return self._finish_prompt_task(
            job_id=job_id,
            template_id=template_id,
            status=PromptTaskStatus.FAILED,
            values={
                "error_message": error_message,
                "processing_time_ms": processing_time_ms,
                "attempts": attempts,
            },
        )

    def skip_prompt_task(
        self,
        *,
        job_id: str,
        template_id: str,
        error_message: str = "skipped: provider quota exceeded",
    ) -> bool:
        """Mark a task that was never sent because the provider quota ran out."""

        return self._finish_prompt_task(
            job_id=job_id,
            template_id=template_id,
            status=PromptTaskStatus.SKIPPED_QUOTA,
            values={"error_message": error_message},
        )

    def _finish_prompt_task(
        self,
        *,
        job_id: str,
        template_id: str,
        status: PromptTaskStatus,
        values: dict[str, Any],
    ) -> bool:
        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(PromptTaskRow)
                .where(
                    col(PromptTaskRow.job_id) == job_id,
                    col(PromptTaskRow.template_id) == template_id,
                    col(PromptTaskRow.status) == PromptTaskStatus.PENDING.value,
                )
                .values(status=status.value, finished_at=now, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=f"prompt_task_{status.value}",
                status_from=None,
                status_to=None,
                details={
                    "template_id": template_id,
                    "error_message": values.get("error_message"),
                },
            )
            session.commit()
            return True

    # Extracted content

    def save_extracted_content(self, *, job_id: str, content: NormalizedText) -> ExtractedContentView:
        """Insert extracted text once; later calls return the stored row unchanged."""

        with self._session() as session:
            row = session.get(ExtractedContentRow, job_id)
            if row is not None:
                return _to_extracted_view(row)
            row = ExtractedContentRow(
                job_id=job_id,
                text=content.text,
                language=content.language,
                word_count=content.word_count,
                source_kind=content.source_kind,
                metadata_json=_dump_json(content.metadata),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="content_extracted",
                status_from=None,
                status_to=None,
                details={
                    "source_kind": content.source_kind,
                    "language": content.language,
                    "word_count": content.word_count,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_extracted_view(row)

    def get_extracted_content(self, job_id: str) -> ExtractedContentView | None:
        with self._session() as session:
            row = session.get(ExtractedContentRow, job_id)
            return _to_extracted_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with tasks, extracted content and event stream."""

        job = self.get_job(job_id)
        if job is None:
            return None
        with self._session() as session:
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()
            events = [_to_event_view(row) for row in event_rows]
        return JobDetails(
            job=job,
            tasks=self.list_prompt_tasks(job_id),
            extracted=self.get_extracted_content(job_id),
            events=events,
        )

    def _get_row(self, *, session: Session, job_id: str) -> JobRow:
        row = session.get(JobRow, job_id)
        if row is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        session.refresh(row)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_json(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: JobRow) -> JobView:
    template_ids = json.loads(row.template_ids_json)
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        session_id=row.session_id,
        source_ref=row.source_ref,
        provider=row.provider,
        template_ids=tuple(template_ids) if isinstance(template_ids, list) else (),
        status=JobStatus(row.status),
        progress=row.progress,
        current_stage=row.current_stage,
        error_message=row.error_message,
        metadata=_load_json_object(row.metadata_json),
        worker_id=row.worker_id,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        processing_started_at=to_utc_aware_or_none(row.processing_started_at),
        processing_completed_at=to_utc_aware_or_none(row.processing_completed_at),
    )


def _to_task_view(row: PromptTaskRow) -> PromptTaskView:
    return PromptTaskView(
        task_id=row.id or 0,
        job_id=row.job_id,
        template_id=row.template_id,
        position=row.position,
        status=PromptTaskStatus(row.status),
        content=row.content,
        error_message=row.error_message,
        tokens_used=row.tokens_used,
        processing_time_ms=row.processing_time_ms,
        provider=row.provider,
        model=row.model,
        attempts=row.attempts,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        finished_at=to_utc_aware_or_none(row.finished_at),
    )


def _to_extracted_view(row: ExtractedContentRow) -> ExtractedContentView:
    return ExtractedContentView(
        job_id=row.job_id,
        text=row.text,
        language=row.language,
        word_count=row.word_count,
        source_kind=row.source_kind,
        metadata=_load_json_object(row.metadata_json),
        created_at=to_utc_aware(row.created_at),
    )


def _to_event_view(row: JobEventRow) -> JobEventView:
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        details=_load_json_object(row.details_json),
    )
