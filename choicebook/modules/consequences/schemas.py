from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict

from choicebook.modules.structure.schemas import CharacterImpact, Consequence, ConsequenceType, EmotionalTone, Magnitude

ResolutionType = Literal["positive", "negative", "mixed", "unexpected"]


@dataclass(slots=True)
class PendingConsequence:
    consequence_id: str
    consequence: Consequence
    source_choice_id: str
    introduced_in_chapter: str
    introduced_at: int
    emotional_tone: EmotionalTone
    impacts: tuple[CharacterImpact, ...] = field(default_factory=tuple)


class Resolution(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolution_id: str
    consequence_id: str
    source_choice_id: str
    type: ConsequenceType
    resolution_type: ResolutionType
    description: str
    magnitude: Magnitude
    affects_character: str | None = None
    affects_plot_thread: str | None = None
    resolved_in_chapter: str
    at_ending: bool = False
