"""Fan-out of prompt templates against one provider with retry and quota handling."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Union

from content_digest.pipeline.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderRequestError,
    ProviderTransientError,
)
from content_digest.pipeline.failure_classifier import ProviderFailureClassification
from content_digest.pipeline.models import PromptTaskStatus
from content_digest.pipeline.providers.base import AIProvider, ProviderConfig
from content_digest.pipeline.templates import PromptTemplate

logger = logging.getLogger(__name__)

PROVIDER_MAX_RETRIES = 3
PROVIDER_RETRY_BASE_MS = 2000
DEFAULT_PROVIDER_CONCURRENCY = 1

QUOTA_EXCEEDED_REASON = "quota_exceeded"
ABORTED_REASON = "aborted"


@dataclass(slots=True, frozen=True)
class Success:
    content: str
    tokens_used: int
    model: str


@dataclass(slots=True, frozen=True)
class TransientFailure:
    cause: str


@dataclass(slots=True, frozen=True)
class QuotaExceeded:
    cause: str
    classification: ProviderFailureClassification | None = field(default=None, compare=False)


@dataclass(slots=True, frozen=True)
class FatalFailure:
    cause: str
    classification: ProviderFailureClassification | None = field(default=None, compare=False)


@dataclass(slots=True, frozen=True)
class RequestRejected:
    cause: str


@dataclass(slots=True, frozen=True)
class NotAttempted:
    """Template never reached the provider because the job was halted."""

    reason: str


PromptOutcome = Union[
    Success,
    TransientFailure,
    QuotaExceeded,
    FatalFailure,
    RequestRejected,
    NotAttempted,
]


@dataclass(slots=True)
class PromptTaskResult:
    """Outcome of one template, attributed to its template id."""

    template_id: str
    position: int
    outcome: PromptOutcome
    provider: str
    attempts: int = 0
    processing_time_ms: int | None = None

    @property
    def task_status(self) -> PromptTaskStatus:
        if isinstance(self.outcome, Success):
            return PromptTaskStatus.COMPLETED
        if isinstance(self.outcome, NotAttempted) and self.outcome.reason == QUOTA_EXCEEDED_REASON:
            return PromptTaskStatus.SKIPPED_QUOTA
        return PromptTaskStatus.FAILED

    @property
    def error_message(self) -> str | None:  # noqa: PLR0911
        outcome = self.outcome
        if isinstance(outcome, Success):
            return None
        if isinstance(outcome, QuotaExceeded):
            return QUOTA_EXCEEDED_REASON
        if isinstance(outcome, NotAttempted):
            if outcome.reason == QUOTA_EXCEEDED_REASON:
                return "skipped: provider quota exceeded"
            return "not attempted: job aborted"
        if isinstance(outcome, TransientFailure):
            return f"transient error after {self.attempts} attempts: {outcome.cause}"
        if isinstance(outcome, FatalFailure):
            return f"provider configuration error: {outcome.cause}"
        return f"request rejected: {outcome.cause}"


def compute_retry_delay_ms(retry_number: int, *, base_ms: int = PROVIDER_RETRY_BASE_MS) -> int:
    """Exact exponential backoff: ``base * 2^(n-1)`` for the n-th retry."""

    return base_ms * (2 ** max(retry_number - 1, 0))


def sort_results(
    results: Iterable[PromptTaskResult],
    templates: Sequence[PromptTemplate] | Sequence[str],
) -> list[PromptTaskResult]:
    """Re-sort results into template submission order."""

    order: dict[str, int] = {}
    for index, template in enumerate(templates):
        template_id = template if isinstance(template, str) else template.template_id
        order.setdefault(template_id, index)
    return sorted(results, key=lambda item: (order.get(item.template_id, len(order)), item.position))


class _HaltState:
    """First quota or auth signal wins; later signals do not change the reason."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reason: str | None = None

    def trip(self, reason: str) -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason

    @property
    def halted(self) -> bool:
        return self.reason is not None

    def not_attempted(self) -> NotAttempted:
        return NotAttempted(reason=self.reason or ABORTED_REASON)


class AIRequestOrchestrator:
    """Runs every template against the provider and streams per-template results.

    Calls run on a bounded thread pool. Templates are dispatched in submission
    order, at most ``max_concurrency`` at a time, so a quota or auth signal
    stops every template that has not been dispatched yet. Calls already in
    flight are allowed to finish, but once a quota signal has been seen their
    results are reported as ``NotAttempted``: those tasks were still pending
    when the quota ran out.
    """

    def __init__(
        self,
        *,
        provider: AIProvider,
        max_concurrency: int = DEFAULT_PROVIDER_CONCURRENCY,
        max_retries: int = PROVIDER_MAX_RETRIES,
        retry_base_ms: int = PROVIDER_RETRY_BASE_MS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.provider = provider
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.retry_base_ms = retry_base_ms
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        text: str,
        templates: Sequence[PromptTemplate],
        provider_config: ProviderConfig,
        *,
        positions: Sequence[int] | None = None,
    ) -> Iterator[PromptTaskResult]:
        """Yield one result per template in completion order.

        ``positions`` maps each template to its index in the job request when
        only a subset of the job's templates is being run.
        """

        if positions is not None and len(positions) != len(templates):
            raise ValueError("positions must match templates")
        queue: deque[tuple[int, PromptTemplate]] = deque(
            zip(positions if positions is not None else range(len(templates)), templates),
        )
        halt = _HaltState()

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix="provider-call",
        ) as pool:
            in_flight: dict[Future[PromptTaskResult], str] = {}
            while queue or in_flight:
                while queue and len(in_flight) < self.max_concurrency and not halt.halted:
                    position, template = queue.popleft()
                    future = pool.submit(
                        self._run_template,
                        text=text,
                        template=template,
                        position=position,
                        config=provider_config,
                        halt=halt,
                    )
                    in_flight[future] = template.template_id
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                quota_seen = halt.reason == QUOTA_EXCEEDED_REASON
                for future in done:
                    in_flight.pop(future)
                    result = future.result()
                    if quota_seen and not isinstance(result.outcome, QuotaExceeded | FatalFailure):
                        # Still pending when the quota signal arrived.
                        result = replace(result, outcome=NotAttempted(reason=QUOTA_EXCEEDED_REASON))
                    if isinstance(result.outcome, QuotaExceeded):
                        halt.trip(QUOTA_EXCEEDED_REASON)
                    elif isinstance(result.outcome, FatalFailure):
                        halt.trip(ABORTED_REASON)
                    yield result

        reason = halt.reason or ABORTED_REASON
        if queue:
            logger.warning(
                "%d template(s) not attempted on %s: %s",
                len(queue),
                provider_config.name,
                reason,
            )
        for position, template in queue:
            yield PromptTaskResult(
                template_id=template.template_id,
                position=position,
                outcome=NotAttempted(reason=reason),
                provider=provider_config.name,
            )

    def _run_template(
        self,
        *,
        text: str,
        template: PromptTemplate,
        position: int,
        config: ProviderConfig,
        halt: _HaltState,
    ) -> PromptTaskResult:
        started = self._clock()
        attempts = 0
        outcome: PromptOutcome
        while True:
            attempts += 1
            try:
                response = self.provider.generate(prompt=template.prompt, text=text, config=config)
            except ProviderTransientError as error:
                outcome = TransientFailure(cause=str(error))
                if halt.halted:
                    outcome = halt.not_attempted()
                    break
                if attempts > self.max_retries:
                    break
                delay_ms = compute_retry_delay_ms(attempts, base_ms=self.retry_base_ms)
                logger.warning(
                    "Transient %s error on template %s (attempt %d), retrying in %d ms: %s",
                    config.name,
                    template.template_id,
                    attempts,
                    delay_ms,
                    error,
                )
                self._sleep(delay_ms / 1000)
                if halt.halted:
                    outcome = halt.not_attempted()
                    break
                continue
            except ProviderQuotaError as error:
                logger.warning(
                    "Quota exceeded on %s for template %s: %s",
                    config.name,
                    template.template_id,
                    error,
                )
                outcome = QuotaExceeded(cause=str(error), classification=error.classification)
            except ProviderAuthError as error:
                logger.error(  # noqa: TRY400
                    "Provider %s rejected credentials or configuration: %s",
                    config.name,
                    error,
                )
                outcome = FatalFailure(cause=str(error), classification=error.classification)
            except (ProviderRequestError, ProviderError) as error:
                logger.warning(
                    "Provider %s rejected template %s: %s",
                    config.name,
                    template.template_id,
                    error,
                )
                outcome = RequestRejected(cause=str(error))
            else:
                outcome = Success(
                    content=response.content,
                    tokens_used=response.tokens_used,
                    model=response.model,
                )
            break

        return PromptTaskResult(
            template_id=template.template_id,
            position=position,
            outcome=outcome,
            provider=config.name,
            attempts=attempts,
            processing_time_ms=int((self._clock() - started) * 1000),
        )
