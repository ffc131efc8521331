"""Progress plan: extraction band, per-task share of the AI band, finalizing band."""

from __future__ import annotations

from dataclasses import dataclass

EXTRACTION_STARTED_PROGRESS = 5
EXTRACTION_DONE_PROGRESS = 20
AI_BAND_END_PROGRESS = 90
FINALIZING_PROGRESS = AI_BAND_END_PROGRESS
COMPLETED_PROGRESS = 100


@dataclass(slots=True, frozen=True)
class ProgressPlan:
    """Maps the number of terminal prompt tasks to a job progress value.

    Each terminal task advances the job by ``(90 - 20) / N`` regardless of
    whether it succeeded, failed or was skipped.
    """

    template_count: int

    @property
    def step(self) -> float:
        if self.template_count <= 0:
            return 0.0
        return (AI_BAND_END_PROGRESS - EXTRACTION_DONE_PROGRESS) / self.template_count

    def after_tasks(self, terminal_count: int) -> int:
        if self.template_count <= 0:
            return AI_BAND_END_PROGRESS
        done = max(0, min(terminal_count, self.template_count))
        band = AI_BAND_END_PROGRESS - EXTRACTION_DONE_PROGRESS
        return EXTRACTION_DONE_PROGRESS + (band * done) // self.template_count
