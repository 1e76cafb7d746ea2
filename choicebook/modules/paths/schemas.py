from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from choicebook.modules.structure.schemas import Consequence


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class SessionKey(NamedTuple):
    user_id: str
    story_id: str
    session_id: str


class ChoiceMade(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_point_id: str
    choice_id: str
    choice_text: str = ""
    timestamp: datetime
    time_taken_seconds: float = Field(default=0.0, ge=0)
    chapter_context: str
    leads_to_chapter: str


class ReaderPath(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    story_id: str
    session_id: str
    structure_version: int = 1
    status: SessionStatus = SessionStatus.ACTIVE
    choices_made: list[ChoiceMade] = Field(default_factory=list)
    current_chapter: str
    visited_chapters: list[str] = Field(default_factory=list)
    path_completion: float = Field(default=0.0, ge=0, le=100)
    discovered_endings: list[str] = Field(default_factory=list)
    playthrough_count: int = Field(default=1, ge=1)
    satisfaction_rating: float | None = Field(default=None, ge=0, le=5)
    session_start: datetime
    session_end: datetime | None = None
    last_activity_at: datetime
    abandoned_at: datetime | None = None

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.user_id, self.story_id, self.session_id)

    def selected_choice_ids(self) -> list[str]:
        return [item.choice_id for item in self.choices_made]


class TransitionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: ReaderPath
    choice: ChoiceMade
    introduced_consequences: list[Consequence] = Field(default_factory=list)
    ending_id: str | None = None
    completed: bool = False
    resolvable_count: int = 0
