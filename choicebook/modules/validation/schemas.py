from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

IssueType = Literal["unreachable_chapter", "circular_reference", "missing_ending", "broken_choice"]
IssueSeverity = Literal["critical", "major", "minor"]
WarningType = Literal["unbalanced_paths", "too_many_choices", "shallow_consequences", "unclear_choice"]


class ValidationIssue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: IssueType
    severity: IssueSeverity
    location: str
    message: str
    suggestion: str | None = None


class ValidationWarning(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: WarningType
    location: str
    message: str
    suggestion: str | None = None


class PathAnalysis(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_paths: int = 0
    average_path_length: float = 0.0
    shortest_path: int = 0
    longest_path: int = 0
    ending_distribution: dict[str, int] = Field(default_factory=dict)
    choice_density: float = 0.0
    replay_value_score: float = 0.0
    truncated: bool = False


class ChoiceValidation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationWarning] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    path_analysis: PathAnalysis = Field(default_factory=PathAnalysis)
