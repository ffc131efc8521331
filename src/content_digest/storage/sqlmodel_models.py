"""SQLModel ORM tables for the job pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    session_id: str | None = Field(default=None, index=True)
    source_ref: str = Field(sa_column=Column(Text, nullable=False))
    provider: str
    template_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    progress: int = Field(default=0)
    current_stage: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processing_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    processing_completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class PromptTaskRow(SQLModel, table=True):
    __tablename__ = "prompt_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "template_id", name="uq_prompt_tasks_job_template"),
        Index("idx_prompt_tasks_job_position", "job_id", "position"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    template_id: str
    position: int
    status: str = Field(index=True)
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    tokens_used: int | None = None
    processing_time_ms: int | None = None
    provider: str
    model: str | None = None
    attempts: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ExtractedContentRow(SQLModel, table=True):
    __tablename__ = "extracted_contents"  # type: ignore[bad-override]

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    text: str = Field(sa_column=Column(Text, nullable=False))
    language: str
    word_count: int
    source_kind: str
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessageRow(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_messages_ready", "status", "visible_after", "created_at"),
        Index(
            "uq_queue_messages_active_key",
            "idempotency_key",
            unique=True,
            sqlite_where=text("status IN ('ready', 'in_flight')"),
        ),
    )

    message_id: str = Field(primary_key=True)
    idempotency_key: str = Field(index=True)
    job_id: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    delivery_count: int = Field(default=0)
    max_deliveries: int = Field(default=3)
    visible_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    worker_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
