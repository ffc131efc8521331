"""Durable at-least-once task queue backed by SQLite.

Delivery is lease based: ``dequeue`` moves a ``ready`` message to
``in_flight`` with ``lease_expires_at = now + visibility_timeout``. A worker
that dies without ``ack``/``nack`` leaves the lease to expire; ``reap_expired``
then makes the message ready again (after backoff) or dead-letters it once its
delivery budget is spent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from content_digest.pipeline.errors import QueueDeliveryError
from content_digest.pipeline.models import (
    JobEnvelope,
    NackOutcome,
    QueueDelivery,
    QueueMessageStatus,
    QueueMessageView,
)
from content_digest.storage.alembic_runner import upgrade_head
from content_digest.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from content_digest.storage.sqlmodel_models import QueueMessageRow

logger = logging.getLogger(__name__)

QUEUE_MAX_DELIVERIES = 3
QUEUE_RETRY_BASE_SECONDS = 5
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 300
_ACTIVE_STATUSES = (QueueMessageStatus.READY.value, QueueMessageStatus.IN_FLIGHT.value)
_LAST_ERROR_CHARS = 2000


class TaskQueue(Protocol):
    """Producer/consumer contract independent of the broker."""

    def enqueue(self, envelope: JobEnvelope) -> str: ...

    def dequeue(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: int,
        job_id: str | None = None,
    ) -> QueueDelivery | None: ...

    def ack(self, delivery: QueueDelivery) -> bool: ...

    def nack(self, delivery: QueueDelivery, *, error: str) -> NackOutcome: ...

    def touch(self, delivery: QueueDelivery, *, visibility_timeout_seconds: int) -> bool: ...

    def reap_expired(self) -> list[QueueMessageView]: ...


def compute_redelivery_delay_seconds(
    delivery_count: int,
    *,
    base_seconds: int = QUEUE_RETRY_BASE_SECONDS,
) -> int:
    """Exact exponential backoff ``base * 2^(n-1)`` for the n-th delivery."""

    return base_seconds * (2 ** max(delivery_count - 1, 0))


class SqliteTaskQueue:
    """``TaskQueue`` over the ``queue_messages`` table."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        max_deliveries: int = QUEUE_MAX_DELIVERIES,
        retry_base_seconds: int = QUEUE_RETRY_BASE_SECONDS,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self.db_path = db_path
        self.max_deliveries = max_deliveries
        self.retry_base_seconds = retry_base_seconds
        self._now = now
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise QueueDeliveryError(f"Task queue error: {error}") from error

    def enqueue(self, envelope: JobEnvelope, *, delay_seconds: int = 0) -> str:
        """Store an envelope; a live message with the same key is returned instead."""

        existing = self._find_active_id(envelope.idempotency_key)
        if existing is not None:
            logger.info(
                "Envelope for job %s already queued as %s",
                envelope.job_id,
                existing,
            )
            return existing

        now = self._now()
        message_id = str(uuid4())
        row = QueueMessageRow(
            message_id=message_id,
            idempotency_key=envelope.idempotency_key,
            job_id=envelope.job_id,
            payload_json=json.dumps(envelope.to_payload(), ensure_ascii=False, sort_keys=True),
            status=QueueMessageStatus.READY.value,
            delivery_count=0,
            max_deliveries=self.max_deliveries,
            visible_after=to_db_datetime(now + timedelta(seconds=max(0, delay_seconds))),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except IntegrityError:
            # Lost a race against a concurrent enqueue of the same key.
            existing = self._find_active_id(envelope.idempotency_key)
            if existing is None:
                raise QueueDeliveryError(
                    f"Could not enqueue job {envelope.job_id}: duplicate key without live message",
                ) from None
            return existing
        except SQLAlchemyError as error:
            raise QueueDeliveryError(f"Task queue error: {error}") from error
        return message_id

    def dequeue(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        job_id: str | None = None,
    ) -> QueueDelivery | None:
        """Atomically lease the oldest visible message, optionally of one job only."""

        while True:
            now = self._now()
            statement = select(QueueMessageRow).where(
                QueueMessageRow.status == QueueMessageStatus.READY.value,
                QueueMessageRow.visible_after <= to_db_datetime(now),
            )
            if job_id is not None:
                statement = statement.where(QueueMessageRow.job_id == job_id)
            with self._session() as session:
                candidate = session.exec(
                    statement.order_by(
                        col(QueueMessageRow.visible_after).asc(),
                        col(QueueMessageRow.created_at).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                message_id = candidate.message_id
                payload_json = candidate.payload_json
                max_deliveries = candidate.max_deliveries
                claimed_count = candidate.delivery_count
                lease_expires_at = now + timedelta(seconds=visibility_timeout_seconds)
                result = session.exec(
                    sa_update(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.message_id) == message_id,
                        col(QueueMessageRow.status) == QueueMessageStatus.READY.value,
                        col(QueueMessageRow.delivery_count) == claimed_count,
                    )
                    .values(
                        status=QueueMessageStatus.IN_FLIGHT.value,
                        delivery_count=claimed_count + 1,
                        lease_expires_at=to_db_datetime(lease_expires_at),
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return QueueDelivery(
                    message_id=message_id,
                    envelope=JobEnvelope.from_payload(json.loads(payload_json)),
                    delivery_count=claimed_count + 1,
                    max_deliveries=max_deliveries,
                    worker_id=worker_id,
                    lease_expires_at=lease_expires_at,
                )

    def ack(self, delivery: QueueDelivery) -> bool:
        """Remove a delivered message from circulation."""

        now = to_db_datetime(self._now())
        with self._session() as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(*_owned_by(delivery))
                .values(
                    status=QueueMessageStatus.ACKED.value,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Ack ignored for message %s: lease no longer held by %s",
                    delivery.message_id,
                    delivery.worker_id,
                )
                return False
            session.commit()
            return True

    def nack(self, delivery: QueueDelivery, *, error: str) -> NackOutcome:
        """Return a delivery after an infrastructure failure.

        The message becomes visible again after the redelivery backoff, or is
        dead-lettered when its delivery budget is exhausted.
        """

        now = self._now()
        last_error = error[:_LAST_ERROR_CHARS]
        dead = delivery.delivery_count >= delivery.max_deliveries
        visible_after: datetime | None = None
        if dead:
            values: dict[str, object] = {
                "status": QueueMessageStatus.DEAD.value,
                "finished_at": to_db_datetime(now),
            }
        else:
            delay = compute_redelivery_delay_seconds(
                delivery.delivery_count,
                base_seconds=self.retry_base_seconds,
            )
            visible_after = now + timedelta(seconds=delay)
            values = {
                "status": QueueMessageStatus.READY.value,
                "visible_after": to_db_datetime(visible_after),
            }
        with self._session() as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(*_owned_by(delivery))
                .values(
                    lease_expires_at=None,
                    worker_id=None,
                    last_error=last_error,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Nack ignored for message %s: lease no longer held by %s",
                    delivery.message_id,
                    delivery.worker_id,
                )
                return NackOutcome(requeued=False, dead=False)
            session.commit()
        if dead:
            logger.error(
                "Message %s for job %s dead-lettered after %d deliveries: %s",
                delivery.message_id,
                delivery.envelope.job_id,
                delivery.delivery_count,
                last_error,
            )
        return NackOutcome(requeued=not dead, dead=dead, visible_after=visible_after)

    def touch(
        self,
        delivery: QueueDelivery,
        *,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ) -> bool:
        """Extend the lease of a message still being processed."""

        now = self._now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(*_owned_by(delivery))
                .values(
                    lease_expires_at=to_db_datetime(
                        now + timedelta(seconds=visibility_timeout_seconds),
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def reap_expired(self) -> list[QueueMessageView]:
        """Recover messages whose lease expired.

        Returns the messages dead-lettered by this call so the caller can fail
        their jobs.
        """

        now = self._now()
        dead: list[QueueMessageView] = []
        with self._session() as session:
            expired = session.exec(
                select(QueueMessageRow).where(
                    QueueMessageRow.status == QueueMessageStatus.IN_FLIGHT.value,
                    col(QueueMessageRow.lease_expires_at).is_not(None),
                    col(QueueMessageRow.lease_expires_at) <= to_db_datetime(now),
                ),
            ).all()
            candidates = [(row.message_id, row.delivery_count, row.max_deliveries) for row in expired]

        for message_id, delivery_count, max_deliveries in candidates:
            exhausted = delivery_count >= max_deliveries
            if exhausted:
                values: dict[str, object] = {
                    "status": QueueMessageStatus.DEAD.value,
                    "finished_at": to_db_datetime(now),
                    "last_error": "lease expired; delivery attempts exhausted",
                }
            else:
                delay = compute_redelivery_delay_seconds(
                    delivery_count,
                    base_seconds=self.retry_base_seconds,
                )
                values = {
                    "status": QueueMessageStatus.READY.value,
                    "visible_after": to_db_datetime(now + timedelta(seconds=delay)),
                    "last_error": "lease expired",
                }
            with self._session() as session:
                result = session.exec(
                    sa_update(QueueMessageRow)
                    .where(
                        col(QueueMessageRow.message_id) == message_id,
                        col(QueueMessageRow.status) == QueueMessageStatus.IN_FLIGHT.value,
                        col(QueueMessageRow.delivery_count) == delivery_count,
                        col(QueueMessageRow.lease_expires_at) <= to_db_datetime(now),
                    )
                    .values(
                        lease_expires_at=None,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                        **values,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                row = session.get(QueueMessageRow, message_id)
                if row is None:
                    continue
                session.refresh(row)
                logger.warning(
                    "Lease expired for message %s (job %s, delivery %d/%d): %s",
                    message_id,
                    row.job_id,
                    delivery_count,
                    max_deliveries,
                    "dead-lettered" if exhausted else "requeued",
                )
                if exhausted:
                    dead.append(_to_message_view(row))
        return dead

    def cancel_pending(self, *, job_id: str) -> bool:
        """Retire a not-yet-delivered message for a job."""

        now = to_db_datetime(self._now())
        with self._session() as session:
            result = session.exec(
                sa_update(QueueMessageRow)
                .where(
                    col(QueueMessageRow.idempotency_key) == job_id,
                    col(QueueMessageRow.status) == QueueMessageStatus.READY.value,
                )
                .values(
                    status=QueueMessageStatus.ACKED.value,
                    last_error="canceled",
                    finished_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount > 0

    def get_message(self, message_id: str) -> QueueMessageView | None:
        with self._session() as session:
            row = session.get(QueueMessageRow, message_id)
            return _to_message_view(row) if row is not None else None

    def list_messages(self, *, job_id: str) -> list[QueueMessageView]:
        with self._session() as session:
            rows = session.exec(
                select(QueueMessageRow)
                .where(QueueMessageRow.job_id == job_id)
                .order_by(col(QueueMessageRow.created_at).asc()),
            ).all()
            return [_to_message_view(row) for row in rows]

    def stats(self) -> dict[str, int]:
        """Message counts per status."""

        counts = {status.value: 0 for status in QueueMessageStatus}
        with self._session() as session:
            rows = session.exec(
                select(QueueMessageRow.status, func.count()).group_by(QueueMessageRow.status),
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def purge(self, *, older_than: timedelta) -> int:
        """Delete finished (acked or dead) messages older than ``older_than``."""

        cutoff = to_db_datetime(self._now() - older_than)
        with self._session() as session:
            result = session.exec(
                sa_delete(QueueMessageRow).where(
                    col(QueueMessageRow.status).in_(
                        [QueueMessageStatus.ACKED.value, QueueMessageStatus.DEAD.value],
                    ),
                    col(QueueMessageRow.updated_at) < cutoff,
                ),
            )
            session.commit()
            return result.rowcount

    def _find_active_id(self, idempotency_key: str) -> str | None:
        with self._session() as session:
            return session.exec(
                select(QueueMessageRow.message_id).where(
                    QueueMessageRow.idempotency_key == idempotency_key,
                    col(QueueMessageRow.status).in_(_ACTIVE_STATUSES),
                ),
            ).first()


def _owned_by(delivery: QueueDelivery) -> tuple[object, ...]:
    return (
        col(QueueMessageRow.message_id) == delivery.message_id,
        col(QueueMessageRow.status) == QueueMessageStatus.IN_FLIGHT.value,
        col(QueueMessageRow.worker_id) == delivery.worker_id,
        col(QueueMessageRow.delivery_count) == delivery.delivery_count,
    )


def _to_message_view(row: QueueMessageRow) -> QueueMessageView:
    return QueueMessageView(
        message_id=row.message_id,
        idempotency_key=row.idempotency_key,
        job_id=row.job_id,
        envelope=JobEnvelope.from_payload(json.loads(row.payload_json)),
        status=QueueMessageStatus(row.status),
        delivery_count=row.delivery_count,
        max_deliveries=row.max_deliveries,
        visible_after=to_utc_aware(row.visible_after),
        lease_expires_at=to_utc_aware_or_none(row.lease_expires_at),
        worker_id=row.worker_id,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
