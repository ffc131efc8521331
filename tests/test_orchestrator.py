from __future__ import annotations

import threading
import time

import allure
import pytest
from conftest import ScriptedProvider

from content_digest.pipeline.errors import (
    ProviderAuthError,
    ProviderQuotaError,
    ProviderRequestError,
    ProviderTransientError,
)
from content_digest.pipeline.models import PromptTaskStatus
from content_digest.pipeline.orchestrator import (
    AIRequestOrchestrator,
    FatalFailure,
    NotAttempted,
    PromptTaskResult,
    QuotaExceeded,
    RequestRejected,
    Success,
    TransientFailure,
    compute_retry_delay_ms,
    sort_results,
)
from content_digest.pipeline.providers import ProviderConfig, ProviderResponse
from content_digest.pipeline.templates import PromptTemplate

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("AI Request Orchestrator"),
]

CONFIG = ProviderConfig(name="echo", model="echo-1")


def _templates(*template_ids: str) -> list[PromptTemplate]:
    return [
        PromptTemplate(template_id=template_id, name=template_id, prompt=template_id)
        for template_id in template_ids
    ]


def _orchestrator(
    provider: ScriptedProvider,
    *,
    concurrency: int = 1,
    sleeps: list[float] | None = None,
) -> AIRequestOrchestrator:
    return AIRequestOrchestrator(
        provider=provider,
        max_concurrency=concurrency,
        sleep=sleeps.append if sleeps is not None else (lambda _seconds: None),
    )


def test_retry_delay_doubles_from_base() -> None:
    assert [compute_retry_delay_ms(n) for n in (1, 2, 3)] == [2000, 4000, 8000]
    assert compute_retry_delay_ms(3, base_ms=100) == 400


def test_sort_results_restores_submission_order() -> None:
    results = [
        PromptTaskResult(
            template_id=template_id,
            position=position,
            outcome=Success("x", 1, "m"),
            provider="echo",
        )
        for template_id, position in (("qa", 2), ("summary", 0), ("keypoints", 1))
    ]

    ordered = sort_results(results, ["summary", "keypoints", "qa"])

    assert [result.template_id for result in ordered] == ["summary", "keypoints", "qa"]


def test_every_template_yields_one_result() -> None:
    provider = ScriptedProvider()
    orchestrator = _orchestrator(provider)

    results = list(orchestrator.run("one two three", _templates("summary", "keypoints"), CONFIG))

    assert [result.template_id for result in results] == ["summary", "keypoints"]
    assert all(result.task_status is PromptTaskStatus.COMPLETED for result in results)
    assert results[0].outcome == Success(content="summary result", tokens_used=3, model="echo-1")
    assert results[0].error_message is None
    assert [result.attempts for result in results] == [1, 1]


def test_processing_time_is_measured_per_template() -> None:
    now = [0.0]
    durations = {"summary": 1.25, "keypoints": 0.75}

    class TimedProvider:
        name = "echo"

        def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
            now[0] += durations[prompt]
            return ProviderResponse(content=prompt, tokens_used=1, model=config.model)

    orchestrator = AIRequestOrchestrator(
        provider=TimedProvider(),
        max_concurrency=1,
        clock=lambda: now[0],
    )

    results = list(orchestrator.run("text", _templates("summary", "keypoints"), CONFIG))

    assert [result.processing_time_ms for result in results] == [1250, 750]


def test_quota_signal_skips_templates_not_yet_dispatched() -> None:
    provider = ScriptedProvider(
        script={"keypoints": [ProviderQuotaError("quota exhausted", provider="echo")]},
    )
    orchestrator = _orchestrator(provider)

    results = list(
        orchestrator.run("text", _templates("summary", "keypoints", "analysis", "qa"), CONFIG),
    )

    assert provider.calls == ["summary", "keypoints"]
    assert [type(result.outcome) for result in results] == [
        Success,
        QuotaExceeded,
        NotAttempted,
        NotAttempted,
    ]
    assert [result.task_status for result in results] == [
        PromptTaskStatus.COMPLETED,
        PromptTaskStatus.FAILED,
        PromptTaskStatus.SKIPPED_QUOTA,
        PromptTaskStatus.SKIPPED_QUOTA,
    ]
    assert results[1].error_message == "quota_exceeded"
    assert results[2].error_message == "skipped: provider quota exceeded"
    assert [result.position for result in results] == [0, 1, 2, 3]


def test_auth_failure_aborts_remaining_templates() -> None:
    provider = ScriptedProvider(
        script={
            "summary": [ProviderAuthError("invalid api key", provider="echo", status_code=401)],
        },
    )
    orchestrator = _orchestrator(provider)

    results = list(orchestrator.run("text", _templates("summary", "keypoints", "qa"), CONFIG))

    assert provider.calls == ["summary"]
    assert isinstance(results[0].outcome, FatalFailure)
    assert results[0].error_message == "provider configuration error: invalid api key"
    assert [result.error_message for result in results[1:]] == [
        "not attempted: job aborted",
        "not attempted: job aborted",
    ]
    assert all(result.task_status is PromptTaskStatus.FAILED for result in results)


def test_transient_errors_retry_with_backoff_until_exhausted() -> None:
    provider = ScriptedProvider(
        script={"summary": [ProviderTransientError("HTTP 503", provider="echo", status_code=503)]},
    )
    sleeps: list[float] = []
    orchestrator = _orchestrator(provider, sleeps=sleeps)

    (result,) = orchestrator.run("text", _templates("summary"), CONFIG)

    assert provider.call_count("summary") == 4
    assert sleeps == [2.0, 4.0, 8.0]
    assert isinstance(result.outcome, TransientFailure)
    assert result.attempts == 4
    assert result.error_message == "transient error after 4 attempts: HTTP 503"


def test_transient_error_recovers_on_retry() -> None:
    provider = ScriptedProvider(
        script={
            "summary": [
                ProviderTransientError("timeout", provider="echo"),
                "recovered digest",
            ],
        },
    )
    sleeps: list[float] = []
    orchestrator = _orchestrator(provider, sleeps=sleeps)

    (result,) = orchestrator.run("text", _templates("summary"), CONFIG)

    assert result.outcome == Success(content="recovered digest", tokens_used=1, model="echo-1")
    assert result.attempts == 2
    assert sleeps == [2.0]


def test_rejected_request_fails_only_its_template() -> None:
    provider = ScriptedProvider(
        script={
            "keypoints": [ProviderRequestError("content policy", provider="echo", status_code=400)],
        },
    )
    orchestrator = _orchestrator(provider)

    results = list(orchestrator.run("text", _templates("summary", "keypoints", "qa"), CONFIG))

    assert provider.calls == ["summary", "keypoints", "qa"]
    assert isinstance(results[1].outcome, RequestRejected)
    assert results[1].error_message == "request rejected: content policy"
    assert results[2].task_status is PromptTaskStatus.COMPLETED


def test_calls_run_concurrently_up_to_the_limit() -> None:
    barrier = threading.Barrier(2, timeout=5)

    class BarrierProvider:
        name = "echo"

        def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
            barrier.wait()
            return ProviderResponse(content=prompt, tokens_used=1, model=config.model)

    orchestrator = AIRequestOrchestrator(provider=BarrierProvider(), max_concurrency=2)

    results = list(orchestrator.run("text", _templates("summary", "keypoints"), CONFIG))

    assert sorted(result.template_id for result in results) == ["keypoints", "summary"]
    assert all(isinstance(result.outcome, Success) for result in results)


def test_positions_follow_the_job_request_when_resuming() -> None:
    orchestrator = _orchestrator(ScriptedProvider())

    results = list(
        orchestrator.run("text", _templates("analysis", "qa"), CONFIG, positions=[2, 4]),
    )

    assert [result.position for result in results] == [2, 4]
    with pytest.raises(ValueError, match="positions"):
        list(orchestrator.run("text", _templates("analysis"), CONFIG, positions=[0, 1]))


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        AIRequestOrchestrator(provider=ScriptedProvider(), max_concurrency=0)
    with pytest.raises(ValueError, match="max_retries"):
        AIRequestOrchestrator(provider=ScriptedProvider(), max_retries=-1)


class _TimedProvider(ScriptedProvider):
    """Scripted provider that also waits a per-template delay before answering."""

    def __init__(self, delays: dict[str, float], **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(**kwargs)
        self.delays = delays

    def generate(self, *, prompt: str, text: str, config: ProviderConfig) -> ProviderResponse:
        time.sleep(self.delays.get(prompt, 0.0))
        return super().generate(prompt=prompt, text=text, config=config)


def test_quota_signal_skips_calls_still_in_flight() -> None:
    provider = _TimedProvider(
        {"keypoints": 0.1, "analysis": 0.6},
        script={"keypoints": [ProviderQuotaError("quota exhausted", provider="echo")]},
    )
    orchestrator = _orchestrator(provider, concurrency=2)

    results = sort_results(
        orchestrator.run("text", _templates("summary", "keypoints", "analysis", "qa"), CONFIG),
        ["summary", "keypoints", "analysis", "qa"],
    )

    assert provider.calls == ["summary", "keypoints", "analysis"]
    assert [result.task_status for result in results] == [
        PromptTaskStatus.COMPLETED,
        PromptTaskStatus.FAILED,
        PromptTaskStatus.SKIPPED_QUOTA,
        PromptTaskStatus.SKIPPED_QUOTA,
    ]
    assert results[1].error_message == "quota_exceeded"


def test_quota_signal_stops_a_retry_loop_in_progress() -> None:
    provider = ScriptedProvider(
        script={
            "summary": [ProviderTransientError("HTTP 503", provider="echo", status_code=503)],
            "keypoints": [ProviderQuotaError("quota exhausted", provider="echo")],
        },
    )
    orchestrator = AIRequestOrchestrator(
        provider=provider,
        max_concurrency=2,
        sleep=lambda _seconds: time.sleep(0.3),
    )

    results = sort_results(
        orchestrator.run("text", _templates("summary", "keypoints"), CONFIG),
        ["summary", "keypoints"],
    )

    assert provider.call_count("summary") == 1
    assert results[0].outcome == NotAttempted(reason="quota_exceeded")
    assert results[0].task_status is PromptTaskStatus.SKIPPED_QUOTA
    assert isinstance(results[1].outcome, QuotaExceeded)
