"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from content_digest.config import ProviderSettings
from content_digest.pipeline.errors import ExtractionError
from content_digest.pipeline.events import JobEvent
from content_digest.pipeline.models import JobCreate, JobEnvelope, JobView, NormalizedText
from content_digest.pipeline.providers import ProviderConfig, ProviderResponse
from content_digest.pipeline.queue import SqliteTaskQueue
from content_digest.pipeline.repository import JobRepository
from content_digest.pipeline.routing import ProviderRouter
from content_digest.pipeline.templates import PromptTemplate, TemplateCatalog
from content_digest.pipeline.worker import PipelineWorker

TEST_TEMPLATE_IDS = ("summary", "keypoints", "analysis", "qa", "learning")

ScriptStep = str | Exception


class ScriptedProvider:
    """Provider answering from a per-template script of replies and errors.

    Test templates use their id as the prompt, so the script is keyed by
    template id. An exhausted script repeats its last step.
    """

    def __init__(self, name: str = "echo", script: dict[str, list[ScriptStep]] | None = None):
        self.name = name
        self.script = {key: list(steps) for key, steps in (script or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        template_id = prompt.strip().splitlines()[0]
        with self._lock:
            self.calls.append(template_id)
            steps = self.script.get(template_id)
            step: ScriptStep = f"{template_id} result"
            if steps:
                step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return ProviderResponse(content=step, tokens_used=len(text.split()), model=config.model)

    def call_count(self, template_id: str) -> int:
        with self._lock:
            return self.calls.count(template_id)


class FakeGateway:
    """Extraction gateway returning a fixed text or raising."""

    def __init__(self, text: str = "alpha beta gamma delta", error: str | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[str] = []

    def extract(self, source_ref: str) -> NormalizedText:
        self.calls.append(source_ref)
        if self.error is not None:
            raise ExtractionError(self.error)
        return NormalizedText(
            text=self.text,
            language="en",
            word_count=len(self.text.split()),
            source_kind="test",
        )


class RecordingSink:
    """Event sink that keeps every event a worker sends."""

    def __init__(self) -> None:
        self.events: list[JobEvent] = []
        self._lock = threading.Lock()

    def send(self, event: JobEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str, job_id: str | None = None) -> list[JobEvent]:
        with self._lock:
            return [
                event
                for event in self.events
                if event.event_type == event_type and (job_id is None or event.job_id == job_id)
            ]


class ManualClock:
    """Controllable ``now`` for queue lease and backoff tests."""

    def __init__(self) -> None:
        self.current = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def build_catalog(template_ids: tuple[str, ...] = TEST_TEMPLATE_IDS) -> TemplateCatalog:
    return TemplateCatalog(
        PromptTemplate(
            template_id=template_id,
            name=template_id.title(),
            prompt=template_id,
            category="test",
        )
        for template_id in template_ids
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "content-digest.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def task_queue(db_path: Path, repository: JobRepository) -> Iterator[SqliteTaskQueue]:
    queue = SqliteTaskQueue(db_path, retry_base_seconds=0)
    yield queue
    queue.close()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def submit_job(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
) -> Callable[..., JobView]:
    """Create a pending job and enqueue its envelope."""

    def _submit(
        template_ids: tuple[str, ...] = ("summary", "keypoints"),
        *,
        provider: str = "echo",
        source_ref: str = "https://example.com/article",
    ) -> JobView:
        job = repository.create_job(
            JobCreate(source_ref=source_ref, template_ids=template_ids, provider=provider),
        )
        task_queue.enqueue(
            JobEnvelope(
                job_id=job.job_id,
                source_ref=job.source_ref,
                template_ids=job.template_ids,
            ),
        )
        return job

    return _submit


@pytest.fixture()
def make_worker(
    repository: JobRepository,
    task_queue: SqliteTaskQueue,
    sink: RecordingSink,
) -> Callable[..., PipelineWorker]:
    """Build a worker around a scripted provider with no retry sleeps."""

    def _make(  # noqa: PLR0913
        provider: ScriptedProvider | None = None,
        *,
        gateway: FakeGateway | None = None,
        concurrency: int = 1,
        max_retries: int = 3,
        worker_id: str = "worker-1",
        sleeps: list[float] | None = None,
        visibility_timeout_seconds: int = 300,
    ) -> PipelineWorker:
        scripted = provider or ScriptedProvider()
        router = ProviderRouter(
            settings=ProviderSettings(
                default_provider=scripted.name,
                concurrency=concurrency,
                max_retries=max_retries,
            ),
            providers={scripted.name: scripted},
            sleep=sleeps.append if sleeps is not None else (lambda _seconds: None),
        )
        return PipelineWorker(
            repository=repository,
            queue=task_queue,
            gateway=gateway or FakeGateway(),
            router=router,
            catalog=build_catalog(),
            events=sink,
            worker_id=worker_id,
            poll_interval_seconds=0.0,
            visibility_timeout_seconds=visibility_timeout_seconds,
        )

    return _make
