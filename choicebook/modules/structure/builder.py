from __future__ import annotations

from typing import Any

from choicebook.modules.structure.errors import DanglingChoiceError, DuplicateIdError, UnknownChapterError
from choicebook.modules.structure.schemas import (
    ChapterDef,
    CharacterDef,
    ChoicePoint,
    ChoiceStructure,
    EndingChapter,
    PathConnection,
)


class ChoiceStructureBuilder:
    """Single mutation step for a story graph.

    Collect parts with the ``add_*`` methods, then call ``build()`` to get a
    checked immutable structure or ``draft()`` to hand an unchecked one to the
    validation engine.
    """

    def __init__(self, story_id: str, start_chapter_id: str, *, version: int = 1) -> None:
        self.story_id = str(story_id)
        self.start_chapter_id = str(start_chapter_id)
        self.version = int(version)
        self._chapters: list[ChapterDef] = []
        self._choice_points: list[ChoicePoint] = []
        self._endings: list[EndingChapter] = []
        self._connections: list[PathConnection] = []
        self._characters: list[CharacterDef] = []
        self._plot_threads: list[str] = []

    @classmethod
    def from_structure(cls, existing: ChoiceStructure) -> "ChoiceStructureBuilder":
        builder = cls(existing.story_id, existing.start_chapter_id, version=existing.version + 1)
        builder._chapters = list(existing.chapters)
        builder._choice_points = list(existing.choice_points)
        builder._endings = list(existing.endings)
        builder._connections = list(existing.path_connections)
        builder._characters = list(existing.characters)
        builder._plot_threads = list(existing.plot_threads)
        return builder

    def add_chapter(self, chapter: ChapterDef | dict | str) -> "ChoiceStructureBuilder":
        if isinstance(chapter, str):
            chapter = ChapterDef(id=chapter)
        self._chapters.append(ChapterDef.model_validate(chapter))
        return self

    def add_character(self, character: CharacterDef | dict | str) -> "ChoiceStructureBuilder":
        if isinstance(character, str):
            character = CharacterDef(name=character)
        self._characters.append(CharacterDef.model_validate(character))
        return self

    def add_plot_thread(self, name: str) -> "ChoiceStructureBuilder":
        if name not in self._plot_threads:
            self._plot_threads.append(str(name))
        return self

    def add_choice_point(self, point: ChoicePoint | dict) -> "ChoiceStructureBuilder":
        self._choice_points.append(ChoicePoint.model_validate(point))
        return self

    def add_ending(self, ending: EndingChapter | dict) -> "ChoiceStructureBuilder":
        self._endings.append(EndingChapter.model_validate(ending))
        return self

    def add_connection(self, connection: PathConnection | dict) -> "ChoiceStructureBuilder":
        self._connections.append(PathConnection.model_validate(connection))
        return self

    def draft(self) -> ChoiceStructure:
        return ChoiceStructure(
            story_id=self.story_id,
            version=self.version,
            start_chapter_id=self.start_chapter_id,
            chapters=list(self._chapters),
            choice_points=list(self._choice_points),
            endings=list(self._endings),
            path_connections=list(self._connections),
            characters=list(self._characters),
            plot_threads=list(self._plot_threads),
        )

    def build(self) -> ChoiceStructure:
        structure = self.draft()
        check_structure(structure)
        return structure


def _check_unique_ids(structure: ChoiceStructure) -> None:
    seen_points: set[str] = set()
    seen_choices: set[str] = set()
    for point in structure.choice_points:
        if point.id in seen_points:
            raise DuplicateIdError("choice_point", point.id)
        seen_points.add(point.id)
        for choice in point.choices:
            if choice.id in seen_choices:
                raise DuplicateIdError("choice", choice.id)
            seen_choices.add(choice.id)

    seen_endings: set[str] = set()
    for ending in structure.endings:
        if ending.id in seen_endings:
            raise DuplicateIdError("ending", ending.id)
        seen_endings.add(ending.id)

    seen_chapters: set[str] = set()
    for chapter in structure.chapters:
        if chapter.id in seen_chapters:
            raise DuplicateIdError("chapter", chapter.id)
        seen_chapters.add(chapter.id)

    seen_characters: set[str] = set()
    for character in structure.characters:
        if character.name in seen_characters:
            raise DuplicateIdError("character", character.name)
        seen_characters.add(character.name)


def check_structure(structure: ChoiceStructure) -> None:
    """Raise the first StructureError that would make the graph unservable."""
    _check_unique_ids(structure)
    playable = structure.playable_chapter_ids()
    # declared chapters without a choice point are open: narration fills them in later
    targets = playable | {chapter.id for chapter in structure.chapters}

    if structure.start_chapter_id not in playable:
        raise UnknownChapterError(
            structure.start_chapter_id,
            location="start_chapter_id",
            detail="start chapter has no choice point and is not an ending",
        )

    for point in structure.choice_points:
        for idx, choice in enumerate(point.choices):
            location = f"choice_points[{point.id}].choices[{idx}]"
            if choice.leads_to_chapter not in targets:
                raise DanglingChoiceError(choice.id, target=choice.leads_to_chapter, location=location)
            if choice.requires_previous_choice and not structure.has_choice(choice.requires_previous_choice):
                raise DanglingChoiceError(
                    choice.id,
                    target=choice.requires_previous_choice,
                    location=f"{location}.requires_previous_choice",
                )

    for idx, connection in enumerate(structure.path_connections):
        location = f"path_connections[{idx}]"
        for chapter_id in (connection.from_chapter, connection.to_chapter):
            if chapter_id not in targets:
                raise UnknownChapterError(chapter_id, location=location)
        if not structure.has_choice(connection.via_choice):
            raise DanglingChoiceError(connection.via_choice, target=connection.via_choice, location=location)

    for ending in structure.endings:
        for idx, requirement in enumerate(ending.requirements):
            location = f"endings[{ending.id}].requirements[{idx}]"
            if requirement.type == "specific_choice" and not structure.has_choice(requirement.target):
                raise DanglingChoiceError(
                    requirement.target,
                    target=requirement.target,
                    location=location,
                    detail="ending requirement names an unknown choice",
                )
            if requirement.type == "path_taken" and requirement.target not in targets:
                raise UnknownChapterError(requirement.target, location=location)


def build_choice_structure(payload: dict[str, Any]) -> ChoiceStructure:
    """Build and check a structure from its JSON document form."""
    draft = ChoiceStructure.model_validate(payload)
    check_structure(draft)
    return draft


def draft_choice_structure(payload: dict[str, Any]) -> ChoiceStructure:
    return ChoiceStructure.model_validate(payload)
