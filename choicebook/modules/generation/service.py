from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Sequence

from pydantic import ValidationError

from choicebook.config import settings
from choicebook.modules.consequences.engine import ConsequenceEngine
from choicebook.modules.consequences.schemas import PendingConsequence, Resolution
from choicebook.modules.generation.base import ContentGenerator
from choicebook.modules.generation.errors import GeneratedContentInvalidError, GenerationTimeoutError
from choicebook.modules.generation.schemas import (
    BranchingStrategy,
    GeneratedChapter,
    GeneratedChoice,
    GenerationContext,
    NarrationResult,
    PendingConsequenceView,
    RecentChoice,
)
from choicebook.modules.paths.errors import PathError
from choicebook.modules.paths.requirements import character_snapshot
from choicebook.modules.paths.schemas import ReaderPath, SessionKey
from choicebook.modules.paths.tracker import ReaderPathTracker
from choicebook.modules.structure.builder import ChoiceStructureBuilder
from choicebook.modules.structure.errors import StructureError
from choicebook.modules.structure.schemas import (
    Choice,
    ChoicePoint,
    ChoiceStructure,
    ChoiceType,
    DifficultyLevel,
)

logger = logging.getLogger(__name__)

_RECENT_CHOICES = 3


def _recent_choices(path: ReaderPath, limit: int | None = None) -> list[RecentChoice]:
    items = path.choices_made if limit is None else path.choices_made[-limit:]
    return [
        RecentChoice(choice_id=item.choice_id, choice_text=item.choice_text, chapter_id=item.chapter_context)
        for item in items
    ]


def ending_proximity(structure: ChoiceStructure, chapter_id: str) -> float:
    if structure.is_ending_chapter(chapter_id):
        return 1.0
    distances = structure.shortest_distances(chapter_id)
    nearest = [distance for target, distance in distances.items() if structure.is_ending_chapter(target)]
    if not nearest:
        return 0.0
    return round(1.0 / (1.0 + min(nearest)), 4)


def build_generation_context(
    structure: ChoiceStructure,
    path: ReaderPath,
    pending: Sequence[PendingConsequence],
    resolutions: Sequence[Resolution],
) -> GenerationContext:
    return GenerationContext(
        story_id=path.story_id,
        session_id=path.session_id,
        current_chapter=path.current_chapter,
        recent_choices=_recent_choices(path, _RECENT_CHOICES),
        pending_consequences=[
            PendingConsequenceView(
                consequence_id=item.consequence_id,
                source_choice_id=item.source_choice_id,
                type=item.consequence.type,
                description=item.consequence.description,
                magnitude=item.consequence.magnitude,
                affects_character=item.consequence.affects_character,
                affects_plot_thread=item.consequence.affects_plot_thread,
            )
            for item in pending
        ],
        resolutions=list(resolutions),
        character_relationships=character_snapshot(structure, path.selected_choice_ids()),
        ending_proximity=ending_proximity(structure, path.current_chapter),
        available_chapters=structure.successors(path.current_chapter),
        reachable_endings=sorted(structure.endings_reachable_from(path.current_chapter)),
    )


def choose_branching_strategy(choice_count: int, choices_made: int) -> BranchingStrategy:
    divergence = min(choices_made * 0.2, 1.0)
    if choice_count <= 3 and divergence < 0.5:
        return "conservative"
    if divergence < 0.7:
        return "moderate"
    return "aggressive"


def assess_choice_difficulty(choice: GeneratedChoice) -> DifficultyLevel:
    consequence_count = len(choice.consequences)
    impact_count = len(choice.character_impacts)
    if consequence_count > 2 or impact_count > 2:
        return "hard"
    if consequence_count > 1 or impact_count > 1:
        return "moderate"
    return "easy"


def determine_choice_type(choices: Sequence[GeneratedChoice]) -> ChoiceType:
    if len(choices) == 2:
        return "binary"
    if any(len(choice.consequences) > 1 for choice in choices):
        return "consequential"
    return "multiple"


def expand_chapter(
    structure: ChoiceStructure,
    chapter_id: str,
    generated: GeneratedChapter,
    *,
    target_chapters: Sequence[str] | None = None,
) -> ChoiceStructure:
    """Turn generated choices into a new structure version with a choice point at ``chapter_id``."""
    if chapter_id not in structure.chapter_ids():
        raise GeneratedContentInvalidError(detail=f"unknown chapter '{chapter_id}'")
    if structure.choice_points_at(chapter_id):
        raise GeneratedContentInvalidError(detail=f"chapter '{chapter_id}' already has a choice point")
    if not generated.choices:
        raise GeneratedContentInvalidError(detail="no choices generated")

    targets = [str(item) for item in (target_chapters or []) if str(item).strip()]
    choices: list[Choice] = []
    try:
        for idx, item in enumerate(generated.choices):
            leads_to = item.leads_to_chapter or (targets[idx % len(targets)] if targets else None)
            if not leads_to:
                raise GeneratedContentInvalidError(detail=f"choice {idx + 1} has no destination chapter")
            choices.append(
                Choice(
                    id=item.id or f"{chapter_id}_choice_{idx + 1}",
                    text=item.text,
                    description=item.description,
                    leads_to_chapter=leads_to,
                    consequences=list(item.consequences),
                    character_impacts=list(item.character_impacts),
                    emotional_tone=item.emotional_tone,
                    difficulty_level=assess_choice_difficulty(item),
                )
            )
        point = ChoicePoint(
            id=f"cp_{chapter_id}_v{structure.version + 1}",
            chapter_id=chapter_id,
            position_in_chapter="end",
            choice_type=determine_choice_type(generated.choices),
            affects_ending=generated.affects_ending,
            choices=choices,
        )
    except ValidationError as exc:
        raise GeneratedContentInvalidError(detail=f"{exc.error_count()} validation error(s)") from exc

    builder = ChoiceStructureBuilder.from_structure(structure)
    builder.add_choice_point(point)
    try:
        return builder.build()
    except StructureError as exc:
        raise GeneratedContentInvalidError(detail=exc.message) from exc


def open_chapter_targets(structure: ChoiceStructure, chapter_id: str) -> list[str]:
    """Destinations for generated choices that do not name one."""
    targets = structure.successors(chapter_id)
    if targets:
        return targets
    return list(dict.fromkeys(ending.chapter_id for ending in structure.endings))


class NarrationService:
    """Hands session context to the content generator.

    The reader's choice is already committed when this runs. Resolutions are
    acknowledged only after the generator returns, so a timeout or
    cancellation leaves them queued for the next attempt. When the reader
    stands in an open chapter the generated choices become a new structure
    version, persisted through ``persist`` and activated before the
    resolutions are acknowledged.
    """

    def __init__(
        self,
        tracker: ReaderPathTracker,
        consequence_engine: ConsequenceEngine,
        generator: ContentGenerator,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self.tracker = tracker
        self.consequence_engine = consequence_engine
        self.generator = generator
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.generator_timeout_s)
        self._expand_lock = threading.Lock()

    def _expand_open_chapter(
        self,
        key: SessionKey,
        chapter_id: str,
        generated: GeneratedChapter,
        persist: Callable[[ChoiceStructure], None] | None,
    ) -> int | None:
        with self._expand_lock:
            structure = self.tracker.structure_for(key.story_id)
            if structure.choice_points_at(chapter_id) or structure.is_ending_chapter(chapter_id):
                return None
            expanded = expand_chapter(
                structure,
                chapter_id,
                generated,
                target_chapters=open_chapter_targets(structure, chapter_id),
            )
            if persist is not None:
                persist(expanded)
            self.tracker.register_structure(expanded)
        logger.info(
            "open chapter expanded story=%s chapter=%s version=%s choices=%s",
            key.story_id,
            chapter_id,
            expanded.version,
            len(generated.choices),
        )
        return expanded.version

    async def prepare_next_chapter(
        self,
        key: SessionKey,
        *,
        choice_count: int = 2,
        branching_strategy: BranchingStrategy | None = None,
        persist: Callable[[ChoiceStructure], None] | None = None,
    ) -> NarrationResult:
        key = SessionKey(*key)
        path = self.tracker.get_path(key.session_id)
        structure = self.tracker.structure_for(key.story_id)
        resolutions = self.consequence_engine.resolve_consequences(key)
        context = build_generation_context(structure, path, self.consequence_engine.pending(key), resolutions)
        strategy = branching_strategy or choose_branching_strategy(choice_count, len(path.choices_made))

        try:
            chapter = await asyncio.wait_for(
                self.generator.generate_chapter_content(context, choice_count, strategy),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "chapter generation timed out session=%s pending_resolutions=%s",
                key.session_id,
                len(resolutions),
            )
            raise GenerationTimeoutError(timeout_s=self.timeout_s) from exc
        except asyncio.CancelledError:
            logger.warning(
                "chapter generation cancelled session=%s pending_resolutions=%s",
                key.session_id,
                len(resolutions),
            )
            raise

        version = self._expand_open_chapter(key, path.current_chapter, chapter, persist)
        delivered = [item.resolution_id for item in resolutions]
        self.consequence_engine.acknowledge(key, delivered)
        return NarrationResult(
            session_id=key.session_id,
            chapter=chapter,
            delivered_resolution_ids=delivered,
            structure_version=version,
        )

    async def prepare_ending(self, key: SessionKey) -> str:
        key = SessionKey(*key)
        path = self.tracker.get_path(key.session_id)
        if not path.discovered_endings:
            raise PathError(code="ENDING_NOT_REACHED", message=f"session '{key.session_id}' has not reached an ending")
        structure = self.tracker.structure_for(key.story_id)
        ending = structure.ending_by_id(path.discovered_endings[-1])
        if ending is None:
            raise PathError(code="ENDING_NOT_REACHED", message=f"ending '{path.discovered_endings[-1]}' is gone")
        try:
            return await asyncio.wait_for(
                self.generator.generate_ending_content(_recent_choices(path), ending.ending_type, list(ending.requirements)),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("ending generation timed out session=%s", key.session_id)
            raise GenerationTimeoutError(timeout_s=self.timeout_s) from exc
