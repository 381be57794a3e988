"""Define the pipeline stages and the only legal moves between them."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from .errors import StageTransitionError


class PipelineStage(str, Enum):
    """Top-level stage of a project pipeline."""

    IDEATION = "ideation"
    SPECIFICATION = "specification"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def gate_prefix(self) -> Optional[str]:
        """Prefix of the `PhaseGates` fields for this stage (None for implementation)."""
        return _GATE_PREFIXES.get(self)

    @property
    def ordinal(self) -> int:
        return _ORDER.index(self) + 1

    def next(self) -> Optional["PipelineStage"]:
        return STAGE_TRANSITIONS.get(self)

    @classmethod
    def parse(cls, value: object) -> "PipelineStage":
        """Coerce persisted values (names, numbers 1-3, aliases) to a stage.

        Raises:
            ValueError: If the value does not name a stage.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in _ALIASES:
            return _ALIASES[text]
        return cls(text)


_ORDER = [
    PipelineStage.IDEATION,
    PipelineStage.SPECIFICATION,
    PipelineStage.PLANNING,
    PipelineStage.IMPLEMENTATION,
]

# Each stage has exactly one successor; implementation is final.
STAGE_TRANSITIONS: dict[PipelineStage, PipelineStage] = {
    PipelineStage.IDEATION: PipelineStage.SPECIFICATION,
    PipelineStage.SPECIFICATION: PipelineStage.PLANNING,
    PipelineStage.PLANNING: PipelineStage.IMPLEMENTATION,
}

_DISPLAY_NAMES = {
    PipelineStage.IDEATION: "Ideation",
    PipelineStage.SPECIFICATION: "Specification",
    PipelineStage.PLANNING: "Implementation Planning",
    PipelineStage.IMPLEMENTATION: "Implementation",
}

_GATE_PREFIXES = {
    PipelineStage.IDEATION: "ideation",
    PipelineStage.SPECIFICATION: "spec",
    PipelineStage.PLANNING: "planning",
}

_ALIASES = {
    "1": PipelineStage.IDEATION,
    "2": PipelineStage.SPECIFICATION,
    "3": PipelineStage.PLANNING,
    "spec": PipelineStage.SPECIFICATION,
    "impl": PipelineStage.IMPLEMENTATION,
}


def is_legal_transition(from_stage: PipelineStage, to_stage: PipelineStage) -> bool:
    return STAGE_TRANSITIONS.get(from_stage) == to_stage


def ensure_transition(from_stage: PipelineStage, to_stage: PipelineStage) -> None:
    if not is_legal_transition(from_stage, to_stage):
        raise StageTransitionError.illegal(from_stage.value, to_stage.value)


def stage_for_approval_key(key: str) -> Optional[PipelineStage]:
    """Map an approval key like ``phase-2`` or ``Phase 2`` to its stage.

    Implementation-phase keys (``impl-<n>``) and unknown keys return None.
    """
    text = (key or "").strip().lower()
    for prefix in ("phase-", "phase "):
        if text.startswith(prefix):
            suffix = text[len(prefix):].strip()
            stage = _ALIASES.get(suffix)
            if stage is not None and stage != PipelineStage.IMPLEMENTATION:
                return stage
    return None


def impl_approval_key(phase_number: int) -> str:
    return f"impl-{phase_number}"
