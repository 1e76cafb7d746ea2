from __future__ import annotations

import hashlib
import json
from collections import deque
from threading import Lock
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

PositionInChapter = Literal["end", "middle", "early"]
ChoiceType = Literal["binary", "multiple", "consequential"]
EmotionalTone = Literal["positive", "negative", "neutral", "mysterious"]
DifficultyLevel = Literal["easy", "moderate", "hard"]
ConsequenceType = Literal["immediate", "delayed", "ending_modifier"]
Magnitude = Literal["minor", "moderate", "major"]
EndingType = Literal["happy", "tragic", "bittersweet", "mysterious", "open"]
Rarity = Literal["common", "uncommon", "rare", "secret"]
RequirementType = Literal["specific_choice", "character_relationship", "choice_count", "path_taken"]
RequirementOperator = Literal["equals", "greater_than", "less_than", "contains"]

RARITY_RANK: dict[str, int] = {"common": 0, "uncommon": 1, "rare": 2, "secret": 3}


class Consequence(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ConsequenceType
    description: str = Field(min_length=1)
    affects_character: str | None = None
    affects_plot_thread: str | None = None
    magnitude: Magnitude = "moderate"


class CharacterImpact(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    character_name: str = Field(min_length=1)
    relationship_change: int = Field(default=0, ge=-10, le=10)
    trust_change: int = Field(default=0, ge=-10, le=10)
    development_unlock: str | None = None


class Choice(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    text: str
    description: str | None = None
    leads_to_chapter: str = Field(min_length=1)
    requires_previous_choice: str | None = None
    consequences: list[Consequence] = Field(default_factory=list)
    character_impacts: list[CharacterImpact] = Field(default_factory=list)
    emotional_tone: EmotionalTone = "neutral"
    difficulty_level: DifficultyLevel = "easy"


class ChoicePoint(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    chapter_id: str = Field(min_length=1)
    position_in_chapter: PositionInChapter = "end"
    choice_type: ChoiceType = "binary"
    affects_ending: bool = False
    time_pressure: bool = False
    choices: list[Choice] = Field(min_length=1)


class ChoiceRequirement(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: RequirementType
    target: str = ""
    operator: RequirementOperator = "equals"
    value: bool | int | float | str = True


class EndingChapter(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    chapter_id: str = Field(min_length=1)
    ending_type: EndingType = "open"
    requirements: list[ChoiceRequirement] = Field(default_factory=list)
    rarity: Rarity = "common"
    satisfaction_rating: float | None = Field(default=None, ge=0, le=5)


class PathConnection(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    from_chapter: str = Field(min_length=1)
    to_chapter: str = Field(min_length=1)
    via_choice: str = Field(min_length=1)
    weight: float = Field(default=1.0, ge=0)


class ChapterDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    title: str = ""
    summary: str = ""


class CharacterDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    description: str = ""


class ChoiceStructure(BaseModel):
    """Immutable branching graph for one story.

    Instances come out of ``ChoiceStructureBuilder``; ``build()`` guarantees the
    references are consistent, ``draft()`` does not. Query helpers assume a
    built structure and are memoized per instance (one instance per version).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    story_id: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    start_chapter_id: str = Field(min_length=1)
    chapters: list[ChapterDef] = Field(default_factory=list)
    choice_points: list[ChoicePoint] = Field(default_factory=list)
    endings: list[EndingChapter] = Field(default_factory=list)
    path_connections: list[PathConnection] = Field(default_factory=list)
    characters: list[CharacterDef] = Field(default_factory=list)
    plot_threads: list[str] = Field(default_factory=list)

    _choice_index: dict[str, tuple[ChoicePoint, Choice]] = PrivateAttr(default_factory=dict)
    _points_by_chapter: dict[str, list[ChoicePoint]] = PrivateAttr(default_factory=dict)
    _endings_by_chapter: dict[str, list[EndingChapter]] = PrivateAttr(default_factory=dict)
    _chapter_ids: list[str] = PrivateAttr(default_factory=list)
    _adjacency: dict[str, list[str]] = PrivateAttr(default_factory=dict)
    _reachable_endings: dict[tuple[int, str], frozenset[str]] = PrivateAttr(default_factory=dict)
    _estimated_length: float | None = PrivateAttr(default=None)
    _cache_lock: Lock = PrivateAttr(default_factory=Lock)

    def model_post_init(self, __context) -> None:
        chapter_ids: list[str] = []
        seen_chapters: set[str] = set()

        def _add_chapter(chapter_id: str) -> None:
            if chapter_id and chapter_id not in seen_chapters:
                seen_chapters.add(chapter_id)
                chapter_ids.append(chapter_id)

        _add_chapter(self.start_chapter_id)
        for chapter in self.chapters:
            _add_chapter(chapter.id)
        for point in self.choice_points:
            _add_chapter(point.chapter_id)
            self._points_by_chapter.setdefault(point.chapter_id, []).append(point)
            for choice in point.choices:
                self._choice_index.setdefault(choice.id, (point, choice))
        for ending in self.endings:
            _add_chapter(ending.chapter_id)
            self._endings_by_chapter.setdefault(ending.chapter_id, []).append(ending)
        self._chapter_ids = chapter_ids

        adjacency: dict[str, list[str]] = {chapter_id: [] for chapter_id in chapter_ids}
        for connection in self.connections():
            if connection.from_chapter not in adjacency or connection.to_chapter not in adjacency:
                continue
            targets = adjacency[connection.from_chapter]
            if connection.to_chapter not in targets:
                targets.append(connection.to_chapter)
        self._adjacency = adjacency

    def chapter_ids(self) -> list[str]:
        return list(self._chapter_ids)

    def playable_chapter_ids(self) -> set[str]:
        return set(self._points_by_chapter) | set(self._endings_by_chapter)

    def connections(self) -> list[PathConnection]:
        """Edges derived from choices merged with explicitly declared connections."""
        out: list[PathConnection] = []
        seen: set[tuple[str, str, str]] = set()
        for point in self.choice_points:
            for choice in point.choices:
                key = (point.chapter_id, choice.leads_to_chapter, choice.id)
                if key in seen:
                    continue
                seen.add(key)
                out.append(
                    PathConnection(
                        from_chapter=point.chapter_id,
                        to_chapter=choice.leads_to_chapter,
                        via_choice=choice.id,
                    )
                )
        for connection in self.path_connections:
            key = (connection.from_chapter, connection.to_chapter, connection.via_choice)
            if key in seen:
                continue
            seen.add(key)
            out.append(connection)
        return out

    def successors(self, chapter_id: str) -> list[str]:
        return list(self._adjacency.get(chapter_id, []))

    def find_choice(self, choice_id: str) -> tuple[ChoicePoint, Choice] | None:
        return self._choice_index.get(choice_id)

    def has_choice(self, choice_id: str) -> bool:
        return choice_id in self._choice_index

    def chapter_for(self, choice_id: str) -> str | None:
        found = self._choice_index.get(choice_id)
        return found[0].chapter_id if found else None

    def destination_of(self, choice_id: str) -> str | None:
        found = self._choice_index.get(choice_id)
        return found[1].leads_to_chapter if found else None

    def choice_point_for(self, choice_id: str) -> ChoicePoint | None:
        found = self._choice_index.get(choice_id)
        return found[0] if found else None

    def choice_points_at(self, chapter_id: str) -> list[ChoicePoint]:
        return list(self._points_by_chapter.get(chapter_id, []))

    def choices_at(self, chapter_id: str) -> list[Choice]:
        return [choice for point in self._points_by_chapter.get(chapter_id, []) for choice in point.choices]

    def endings_at(self, chapter_id: str) -> list[EndingChapter]:
        return list(self._endings_by_chapter.get(chapter_id, []))

    def is_ending_chapter(self, chapter_id: str) -> bool:
        return chapter_id in self._endings_by_chapter

    def ending_by_id(self, ending_id: str) -> EndingChapter | None:
        for ending in self.endings:
            if ending.id == ending_id:
                return ending
        return None

    def character_names(self) -> set[str]:
        names = {character.name for character in self.characters}
        for point in self.choice_points:
            for choice in point.choices:
                names.update(impact.character_name for impact in choice.character_impacts)
        return names

    def endings_reachable_from(self, chapter_id: str) -> frozenset[str]:
        cache_key = (self.version, chapter_id)
        cached = self._reachable_endings.get(cache_key)
        if cached is not None:
            return cached

        visited: set[str] = set()
        stack = [chapter_id]
        while stack:
            current = stack.pop()
            if current in visited or current not in self._adjacency:
                continue
            visited.add(current)
            for nxt in self._adjacency[current]:
                if nxt not in visited:
                    stack.append(nxt)
        result = frozenset(
            ending.id
            for visited_id in visited
            for ending in self._endings_by_chapter.get(visited_id, [])
        )
        with self._cache_lock:
            self._reachable_endings[cache_key] = result
        return result

    def shortest_distances(self, chapter_id: str | None = None) -> dict[str, int]:
        origin = chapter_id or self.start_chapter_id
        if origin not in self._adjacency:
            return {}
        distances = {origin: 0}
        queue = deque([origin])
        while queue:
            current = queue.popleft()
            for nxt in self._adjacency[current]:
                if nxt not in distances:
                    distances[nxt] = distances[current] + 1
                    queue.append(nxt)
        return distances

    def estimated_path_length(self) -> float:
        """Mean number of choices from the start chapter to each reachable ending chapter."""
        if self._estimated_length is not None:
            return self._estimated_length
        distances = self.shortest_distances()
        ending_distances = [distances[chapter_id] for chapter_id in self._endings_by_chapter if chapter_id in distances]
        if ending_distances:
            estimate = max(1.0, sum(ending_distances) / len(ending_distances))
        else:
            estimate = float(max(1, len(self._chapter_ids) - 1))
        with self._cache_lock:
            self._estimated_length = estimate
        return estimate

    def checksum(self) -> str:
        canonical = json.dumps(self.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
