from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from choicebook.modules.consequences.schemas import Resolution
from choicebook.modules.structure.schemas import (
    CharacterImpact,
    ChoiceRequirement,
    Consequence,
    EmotionalTone,
    EndingType,
)

BranchingStrategy = Literal["conservative", "moderate", "aggressive"]


class RecentChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_id: str
    choice_text: str
    chapter_id: str


class PendingConsequenceView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    consequence_id: str
    source_choice_id: str
    type: str
    description: str
    magnitude: str
    affects_character: str | None = None
    affects_plot_thread: str | None = None


class GenerationContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    story_id: str
    session_id: str
    current_chapter: str
    recent_choices: list[RecentChoice] = Field(default_factory=list)
    pending_consequences: list[PendingConsequenceView] = Field(default_factory=list)
    resolutions: list[Resolution] = Field(default_factory=list)
    character_relationships: dict[str, dict[str, int]] = Field(default_factory=dict)
    ending_proximity: float = Field(default=0.0, ge=0, le=1)
    available_chapters: list[str] = Field(default_factory=list)
    reachable_endings: list[str] = Field(default_factory=list)


class GeneratedChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    text: str = Field(min_length=1)
    description: str | None = None
    leads_to_chapter: str | None = None
    emotional_tone: EmotionalTone = "neutral"
    consequences: list[Consequence] = Field(default_factory=list)
    character_impacts: list[CharacterImpact] = Field(default_factory=list)


class GeneratedChapter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = Field(min_length=1)
    choices: list[GeneratedChoice] = Field(default_factory=list)
    affects_ending: bool = False


class GeneratedEnding(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str = Field(min_length=1)


class EndingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_path: list[RecentChoice] = Field(default_factory=list)
    ending_type: EndingType
    requirements: list[ChoiceRequirement] = Field(default_factory=list)


class NarrationResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    chapter: GeneratedChapter
    delivered_resolution_ids: list[str] = Field(default_factory=list)
    structure_version: int | None = None
