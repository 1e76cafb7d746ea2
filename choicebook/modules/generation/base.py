from __future__ import annotations

from abc import ABC, abstractmethod

from choicebook.modules.generation.schemas import (
    BranchingStrategy,
    GeneratedChapter,
    GenerationContext,
    RecentChoice,
)
from choicebook.modules.structure.schemas import ChoiceRequirement, EndingType


class ContentGenerator(ABC):
    name: str

    @abstractmethod
    async def generate_chapter_content(
        self,
        context: GenerationContext,
        choice_count: int,
        branching_strategy: BranchingStrategy,
    ) -> GeneratedChapter:
        pass

    @abstractmethod
    async def generate_ending_content(
        self,
        choice_path: list[RecentChoice],
        ending_type: EndingType,
        requirements: list[ChoiceRequirement],
    ) -> str:
        pass
