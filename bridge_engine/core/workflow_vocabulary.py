"""Workflow stage and skill vocabulary used by the gap detector.

The vocabulary is data, not code: the bundled defaults live in
``data/workflow_vocabulary.json`` and can be replaced wholesale by pointing
``WORKFLOW_VOCABULARY_PATH`` at another file with the same shape.

Keywords match case-insensitively at the start of a word, so ``mockup`` also
matches "mockups" but ``ui`` does not match "build".

Usage:
    from bridge_engine.core.workflow_vocabulary import get_vocabulary

    vocab = get_vocabulary()
    vocab.classify_stage("Design app mockups")   # -> "design"
    vocab.extract_skills("Build API backend")    # -> {"engineering"}
"""

import json
import re
from functools import cached_property, lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from bridge_engine.core.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_STAGE = "unknown"

DEFAULT_VOCABULARY_PATH = Path(__file__).parent / "data" / "workflow_vocabulary.json"


class WorkflowStage(BaseModel):
    name: str = Field(..., min_length=1)
    keywords: list[str] = Field(..., min_length=1)


def _keyword_pattern(keywords: list[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(k.lower()) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})")


class WorkflowVocabulary(BaseModel):
    """Ordered workflow stages plus skill domains, each with its keywords."""

    stages: list[WorkflowStage] = Field(..., min_length=2)
    skills: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("stages")
    @classmethod
    def _unique_stage_names(cls, stages: list[WorkflowStage]) -> list[WorkflowStage]:
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError("Workflow stage names must be unique")
        if UNKNOWN_STAGE in names:
            raise ValueError(f"'{UNKNOWN_STAGE}' is reserved and cannot be a stage name")
        return stages

    @cached_property
    def _stage_patterns(self) -> list[tuple[str, re.Pattern]]:
        return [(stage.name, _keyword_pattern(stage.keywords)) for stage in self.stages]

    @cached_property
    def _skill_patterns(self) -> list[tuple[str, re.Pattern]]:
        return [(skill, _keyword_pattern(kws)) for skill, kws in self.skills.items() if kws]

    def stage_index(self, stage: str) -> int | None:
        for i, s in enumerate(self.stages):
            if s.name == stage:
                return i
        return None

    def classify_stage(self, text: str | None) -> str:
        """Return the first stage (in workflow order) whose vocabulary matches."""
        lowered = (text or "").lower()
        for name, pattern in self._stage_patterns:
            if pattern.search(lowered):
                return name
        return UNKNOWN_STAGE

    def extract_skills(self, text: str | None) -> set[str]:
        lowered = (text or "").lower()
        return {skill for skill, pattern in self._skill_patterns if pattern.search(lowered)}


def load_vocabulary(path: str | Path) -> WorkflowVocabulary:
    """Load and validate a vocabulary file."""
    raw = Path(path).read_text(encoding="utf-8")
    vocabulary = WorkflowVocabulary.model_validate(json.loads(raw))
    logger.debug(
        f"Loaded workflow vocabulary from {path}",
        extra={"stages": len(vocabulary.stages), "skills": len(vocabulary.skills)},
    )
    return vocabulary


@lru_cache
def get_vocabulary() -> WorkflowVocabulary:
    """Get the configured vocabulary (cached)."""
    from bridge_engine.core.config import get_settings

    override = get_settings().WORKFLOW_VOCABULARY_PATH
    return load_vocabulary(override or DEFAULT_VOCABULARY_PATH)
