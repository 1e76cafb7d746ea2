from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from choicebook.modules.structure.schemas import DifficultyLevel


class ChoiceAnalytics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    choice_point_id: str
    choice_id: str
    selection_count: int = 0
    selection_rate: float = 0.0
    average_decision_time: float = 0.0
    completion_rate: float = 0.0
    satisfaction_rating: float | None = None
    difficulty: DifficultyLevel = "easy"
    engagement_score: float = 0.0
    leads_to_ending_count: int = 0
    popular_follow_up_choices: list[str] = Field(default_factory=list)


class PopularPath(BaseModel):
    model_config = ConfigDict(extra="forbid")

    signature: str
    choice_sequence: list[str]
    reader_count: int
    average_completion: float
    popularity_score: float


class ReaderBehavior(BaseModel):
    model_config = ConfigDict(extra="forbid")

    unique_readers: int = 0
    total_sessions: int = 0
    replay_rate: float = 0.0
    average_session_length: float = 0.0
    abandonment_rate: float = 0.0


class EndingStat(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ending_id: str
    ending_type: str
    rarity: str
    completion_count: int = 0
    discovery_rate: float = 0.0
    average_path_length: float = 0.0
    average_satisfaction: float | None = None


class EndingAnalytics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    distribution: dict[str, int] = Field(default_factory=dict)
    total_endings: int = 0
    most_popular: tuple[str, int] | None = None
    endings: list[EndingStat] = Field(default_factory=list)
    undiscovered_endings: list[str] = Field(default_factory=list)


class AnalyticsOverview(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_readers: int = 0
    total_choices_made: int = 0
    average_path_length: float = 0.0
    completion_rate: float = 0.0
    average_playtime_minutes: float = 0.0
    replay_rate: float = 0.0


class PathAnalysisReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    story_id: str
    structure_version: int
    total_paths: int = 0
    average_path_length: float = 0.0
    shortest_path: int = 0
    longest_path: int = 0
    ending_distribution: dict[str, int] = Field(default_factory=dict)
    choice_density: float = 0.0
    replay_value_score: float = 0.0
    choice_analytics: list[ChoiceAnalytics] = Field(default_factory=list)
    popular_paths: list[PopularPath] = Field(default_factory=list)
    reader_behavior: ReaderBehavior = Field(default_factory=ReaderBehavior)
    ending_analytics: EndingAnalytics = Field(default_factory=EndingAnalytics)
    overview: AnalyticsOverview = Field(default_factory=AnalyticsOverview)
