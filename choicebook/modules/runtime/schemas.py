from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from choicebook.modules.consequences.schemas import Resolution
from choicebook.modules.generation.schemas import BranchingStrategy
from choicebook.modules.paths.schemas import ChoiceMade, ReaderPath
from choicebook.modules.structure.schemas import Consequence


class StructurePublishOut(BaseModel):
    story_id: str
    version: int
    checksum: str
    start_chapter_id: str
    chapter_count: int
    ending_count: int


class ValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    structure: dict
    policy: dict | None = None


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    story_id: str = Field(min_length=1)
    session_id: str | None = None
    playthrough_count: int | None = Field(default=None, ge=1)


class ChoiceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_id: str = Field(min_length=1)
    time_taken_seconds: float = Field(default=0.0, ge=0)
    # required only when the session was never opened
    user_id: str | None = None
    story_id: str | None = None


class ChoiceOut(BaseModel):
    path: ReaderPath
    choice: ChoiceMade
    introduced_consequences: list[Consequence] = Field(default_factory=list)
    ending_id: str | None = None
    completed: bool = False
    resolvable_count: int = 0


class RatingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: float = Field(ge=0, le=5)


class ConsequencesOut(BaseModel):
    session_id: str
    resolutions: list[Resolution] = Field(default_factory=list)
    stats: dict = Field(default_factory=dict)


class AcknowledgeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolution_ids: list[str] = Field(default_factory=list)


class AcknowledgeOut(BaseModel):
    session_id: str
    acknowledged: int


class SweepOut(BaseModel):
    abandoned: int
    session_ids: list[str] = Field(default_factory=list)


class NarrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_count: int = Field(default=2, ge=1, le=6)
    branching_strategy: BranchingStrategy | None = None


class EndingNarrationOut(BaseModel):
    session_id: str
    ending_id: str
    content: str
