from __future__ import annotations

import asyncio

from choicebook.modules.generation.base import ContentGenerator
from choicebook.modules.generation.errors import GenerationUnavailableError
from choicebook.modules.generation.schemas import (
    BranchingStrategy,
    GeneratedChapter,
    GeneratedChoice,
    GenerationContext,
    RecentChoice,
)
from choicebook.modules.structure.schemas import ChoiceRequirement, Consequence, EmotionalTone, EndingType

_TONES: tuple[EmotionalTone, ...] = ("positive", "negative", "mysterious", "neutral")
_OPENINGS = (
    "Press on toward the light",
    "Hold back and watch",
    "Follow the stranger",
    "Turn around while you still can",
    "Speak the truth",
    "Keep the secret",
)


class FakeContentGenerator(ContentGenerator):
    """Deterministic generator for dev and tests; output depends only on its inputs."""

    name = "fake"

    def __init__(self) -> None:
        self.chapter_calls = 0
        self.ending_calls = 0
        self.fail_generate = False
        self.delay_s = 0.0

    async def generate_chapter_content(
        self,
        context: GenerationContext,
        choice_count: int,
        branching_strategy: BranchingStrategy,
    ) -> GeneratedChapter:
        self.chapter_calls += 1
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if self.fail_generate:
            raise GenerationUnavailableError(detail="fake generator configured to fail")

        lines = [f"The story continues in {context.current_chapter}."]
        for resolution in context.resolutions:
            lines.append(f"Earlier choices come due ({resolution.resolution_type}): {resolution.description}")
        if context.recent_choices:
            lines.append(f"You remember choosing to {context.recent_choices[-1].choice_text.lower()}.")

        count = max(2, min(int(choice_count), len(_OPENINGS)))
        choices: list[GeneratedChoice] = []
        for idx in range(count):
            consequences: list[Consequence] = []
            if branching_strategy != "conservative" and idx == 0:
                consequences.append(
                    Consequence(type="delayed", description=f"{_OPENINGS[idx]} will be remembered", magnitude="moderate")
                )
            choices.append(
                GeneratedChoice(
                    text=_OPENINGS[idx],
                    emotional_tone=_TONES[idx % len(_TONES)],
                    consequences=consequences,
                )
            )
        return GeneratedChapter(
            content="\n".join(lines),
            choices=choices,
            affects_ending=context.ending_proximity >= 0.8,
        )

    async def generate_ending_content(
        self,
        choice_path: list[RecentChoice],
        ending_type: EndingType,
        requirements: list[ChoiceRequirement],
    ) -> str:
        self.ending_calls += 1
        if self.fail_generate:
            raise GenerationUnavailableError(detail="fake generator configured to fail")
        trail = ", ".join(item.choice_text for item in choice_path) or "no choices at all"
        return f"A {ending_type} ending reached after {len(choice_path)} choice(s): {trail}."
