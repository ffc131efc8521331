"""Prompt template catalog.

Templates are keyed by id and applied in the order the job requests them.
The built-in set mirrors the usual digest categories; a JSON file may add
or override entries::

    {"templates": [{"id": "summary", "name": "Summary", "prompt": "..."}]}
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from content_digest.pipeline.errors import UnknownTemplateError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PromptTemplate:
    """Single prompt applied to the extracted text."""

    template_id: str
    name: str
    prompt: str
    category: str = "custom"


DEFAULT_TEMPLATES: tuple[PromptTemplate, ...] = (
    PromptTemplate(
        template_id="summary",
        name="Key summary",
        category="summary",
        prompt=(
            "Summarize the key content of the following material.\n"
            "- Organize the main content into 3-5 key points.\n"
            "- Each point should be 2-3 sentences.\n"
            "- Keep the overall context and flow; drop repetition and small talk.\n"
            "Format as a markdown section titled 'Key summary' with a numbered list."
        ),
    ),
    PromptTemplate(
        template_id="keypoints",
        name="Key points",
        category="summary",
        prompt=(
            "List the most important points of the following material as short "
            "bullet points, one idea per bullet, in the order they appear."
        ),
    ),
    PromptTemplate(
        template_id="analysis",
        name="Detailed analysis",
        category="analysis",
        prompt=(
            "Analyze the following material in depth.\n"
            "Cover the detailed content per topic, the logical structure, the examples "
            "or cases presented, the author's intent, and any important data or figures.\n"
            "Use markdown subsections for each of these."
        ),
    ),
    PromptTemplate(
        template_id="action_points",
        name="Actionable insights",
        category="action_points",
        prompt=(
            "Based on the following material, propose actionable insights.\n"
            "Give concrete immediate actions, a step-by-step longer term plan, "
            "expected outcomes and caveats. Format as markdown."
        ),
    ),
    PromptTemplate(
        template_id="learning",
        name="Learning points",
        category="learning",
        prompt=(
            "Extract learning points from the following material for a student: "
            "core concepts with definitions, important principles, keywords to "
            "remember and directions for further study. Format as markdown."
        ),
    ),
    PromptTemplate(
        template_id="qa",
        name="Q&A",
        category="qa",
        prompt=(
            "Write question and answer pairs that check understanding of the "
            "following material. Include basic questions, advanced questions and "
            "applied scenario questions, each with a clear answer."
        ),
    ),
    PromptTemplate(
        template_id="business",
        name="Business application",
        category="business",
        prompt=(
            "Describe how the ideas in the following material could be applied in "
            "a business: opportunities, required resources, risks and first steps."
        ),
    ),
)


class TemplateCatalog:
    """In-memory lookup of prompt templates by id."""

    def __init__(self, templates: Iterable[PromptTemplate] = DEFAULT_TEMPLATES) -> None:
        self._templates: dict[str, PromptTemplate] = {}
        for template in templates:
            self._templates[template.template_id] = template

    @classmethod
    def from_file(cls, path: Path, *, include_defaults: bool = True) -> TemplateCatalog:
        """Load templates from JSON, layered over the built-in set."""

        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {path}")
        raw_templates = payload.get("templates")
        if not isinstance(raw_templates, list):
            raise TypeError(f"{path}: templates must be an array")

        loaded: list[PromptTemplate] = []
        for index, raw in enumerate(raw_templates):
            if not isinstance(raw, dict):
                raise TypeError(f"{path}: templates[{index}] must be an object")
            template_id = raw.get("id")
            prompt = raw.get("prompt")
            if not isinstance(template_id, str) or not template_id.strip():
                raise ValueError(f"{path}: templates[{index}].id must be a non-empty string")
            if not isinstance(prompt, str) or not prompt.strip():
                raise ValueError(f"{path}: templates[{index}].prompt must be a non-empty string")
            loaded.append(
                PromptTemplate(
                    template_id=template_id.strip(),
                    name=str(raw.get("name") or template_id),
                    prompt=prompt,
                    category=str(raw.get("category") or "custom"),
                ),
            )

        base = list(DEFAULT_TEMPLATES) if include_defaults else []
        logger.info("Loaded %d prompt templates from %s", len(loaded), path)
        return cls([*base, *loaded])

    def get(self, template_id: str) -> PromptTemplate | None:
        return self._templates.get(template_id)

    def resolve(self, template_ids: Iterable[str]) -> list[PromptTemplate]:
        """Return templates in the requested order or raise for unknown ids."""

        requested = list(template_ids)
        missing = [item for item in requested if item not in self._templates]
        if missing:
            raise UnknownTemplateError(missing)
        return [self._templates[item] for item in requested]

    def list_templates(self) -> list[PromptTemplate]:
        return list(self._templates.values())

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)
