from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING

from choicebook.config import settings
from choicebook.modules.paths.completion import next_completion, step_weight
from choicebook.modules.paths.errors import (
    InvalidChoiceError,
    PathError,
    SessionNotActiveError,
    SessionNotFoundError,
    UnknownStoryError,
)
from choicebook.modules.paths.requirements import character_snapshot, ending_satisfied
from choicebook.modules.paths.schemas import ChoiceMade, ReaderPath, SessionKey, SessionStatus, TransitionResult
from choicebook.modules.structure.schemas import RARITY_RANK, ChoiceStructure, EndingChapter
from choicebook.utils.time import as_utc, utc_now_aware

if TYPE_CHECKING:
    from choicebook.modules.consequences.engine import ConsequenceEngine

logger = logging.getLogger(__name__)


def _select_ending(structure: ChoiceStructure, path: ReaderPath, chapter_id: str) -> EndingChapter | None:
    candidates = structure.endings_at(chapter_id)
    if not candidates:
        return None
    satisfied = [ending for ending in candidates if ending_satisfied(ending, structure=structure, path=path)]
    if satisfied:
        # rarest satisfied ending wins; declaration order breaks ties
        return max(satisfied, key=lambda ending: (RARITY_RANK[ending.rarity], -candidates.index(ending)))
    fallback = min(candidates, key=lambda ending: (RARITY_RANK[ending.rarity], candidates.index(ending)))
    logger.info(
        "no ending requirements satisfied story=%s session=%s chapter=%s fallback=%s",
        path.story_id,
        path.session_id,
        chapter_id,
        fallback.id,
    )
    return fallback


class ReaderPathTracker:
    """Per-session state machine over the active structure of each story.

    Writes to one session are serialized by a lock owned by its
    ``(user_id, story_id, session_id)`` key; distinct sessions proceed in
    parallel. Structures are immutable and shared without locking.
    """

    def __init__(
        self,
        *,
        consequence_engine: ConsequenceEngine | None = None,
        idle_timeout_s: float | None = None,
        step_weight_override: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.consequence_engine = consequence_engine
        self.idle_timeout_s = float(idle_timeout_s if idle_timeout_s is not None else settings.session_idle_timeout_s)
        self.step_weight_override = (
            step_weight_override if step_weight_override is not None else settings.completion_step_weight
        )
        self._clock = clock or utc_now_aware
        self._registry_lock = Lock()
        self._structures: dict[str, ChoiceStructure] = {}
        self._paths: dict[SessionKey, ReaderPath] = {}
        self._session_index: dict[str, SessionKey] = {}
        self._locks: dict[SessionKey, Lock] = {}

    def _now(self, now: datetime | None) -> datetime:
        return as_utc(now) if now is not None else self._clock()

    def _lock_for(self, key: SessionKey) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def register_structure(self, structure: ChoiceStructure) -> None:
        with self._registry_lock:
            previous = self._structures.get(structure.story_id)
            self._structures[structure.story_id] = structure
        logger.info(
            "choice structure activated story=%s version=%s previous=%s",
            structure.story_id,
            structure.version,
            previous.version if previous else None,
        )

    def structure_for(self, story_id: str) -> ChoiceStructure:
        with self._registry_lock:
            structure = self._structures.get(story_id)
        if structure is None:
            raise UnknownStoryError(story_id)
        return structure

    def find_session(self, session_id: str) -> SessionKey | None:
        with self._registry_lock:
            return self._session_index.get(session_id)

    def _prior_playthroughs(self, user_id: str, story_id: str) -> int:
        prior = [
            path.playthrough_count
            for key, path in self._paths.items()
            if key.user_id == user_id and key.story_id == story_id and path.status.is_terminal
        ]
        return max(prior, default=0)

    def open_session(
        self,
        user_id: str,
        story_id: str,
        session_id: str,
        *,
        playthrough_count: int | None = None,
        now: datetime | None = None,
    ) -> ReaderPath:
        structure = self.structure_for(story_id)
        key = SessionKey(str(user_id), str(story_id), str(session_id))
        with self._lock_for(key):
            with self._registry_lock:
                existing = self._existing_path(key)
                if existing is not None:
                    return existing.model_copy(deep=True)
                path = self._new_path(key, structure, self._now(now), playthrough_count)
                self._paths[key] = path
                self._session_index[key.session_id] = key
            return path.model_copy(deep=True)

    def _existing_path(self, key: SessionKey) -> ReaderPath | None:
        """Caller holds the registry lock."""
        existing_key = self._session_index.get(key.session_id)
        if existing_key is None:
            return None
        if existing_key != key:
            raise PathError(
                code="SESSION_CONFLICT",
                message=f"session '{key.session_id}' already belongs to another reader or story",
            )
        return self._paths[existing_key]

    def _new_path(
        self,
        key: SessionKey,
        structure: ChoiceStructure,
        started_at: datetime,
        playthrough_count: int | None,
    ) -> ReaderPath:
        """Build an Active path at the start chapter without registering it."""
        if playthrough_count is None:
            playthrough_count = self._prior_playthroughs(key.user_id, key.story_id) + 1
        return ReaderPath(
            user_id=key.user_id,
            story_id=key.story_id,
            session_id=key.session_id,
            structure_version=structure.version,
            current_chapter=structure.start_chapter_id,
            visited_chapters=[structure.start_chapter_id],
            playthrough_count=max(1, int(playthrough_count)),
            session_start=started_at,
            last_activity_at=started_at,
        )

    def load_path(self, path: ReaderPath) -> None:
        """Install a stored path as-is (used when hydrating from the store)."""
        key = path.key
        with self._registry_lock:
            self._paths[key] = path.model_copy(deep=True)
            self._session_index[key.session_id] = key

    def get_path(self, session_id: str) -> ReaderPath:
        key = self.find_session(session_id)
        if key is None:
            raise SessionNotFoundError(session_id)
        with self._lock_for(key):
            return self._paths[key].model_copy(deep=True)

    def record_choice(
        self,
        key: SessionKey,
        choice_id: str,
        *,
        time_taken_seconds: float = 0.0,
        now: datetime | None = None,
    ) -> TransitionResult:
        key = SessionKey(*key)
        with self._lock_for(key):
            structure = self.structure_for(key.story_id)
            with self._registry_lock:
                path = self._existing_path(key)
                # an implicit first choice only registers the session once accepted
                fresh = path is None
                if fresh:
                    path = self._new_path(key, structure, self._now(now), None)

            if path.status.is_terminal:
                logger.info(
                    "transition rejected session=%s choice=%s reason=SESSION_NOT_ACTIVE",
                    key.session_id,
                    choice_id,
                )
                raise SessionNotActiveError(key.session_id, status=path.status.value)

            found = structure.find_choice(choice_id)
            if found is None:
                self._reject(key, choice_id, "UNKNOWN_CHOICE")
            point, choice = found
            if point.chapter_id != path.current_chapter:
                self._reject(
                    key,
                    choice_id,
                    "NOT_AT_CURRENT_CHAPTER",
                    detail=f"reader is at '{path.current_chapter}', choice belongs to '{point.chapter_id}'",
                )
            selected = path.selected_choice_ids()
            if choice.requires_previous_choice and choice.requires_previous_choice not in selected:
                self._reject(
                    key,
                    choice_id,
                    "PRECONDITION_UNMET",
                    detail=f"requires '{choice.requires_previous_choice}'",
                )

            moment = self._now(now)
            candidate = path.model_copy(deep=True)
            made = ChoiceMade(
                choice_point_id=point.id,
                choice_id=choice.id,
                choice_text=choice.text,
                timestamp=moment,
                time_taken_seconds=max(0.0, float(time_taken_seconds)),
                chapter_context=point.chapter_id,
                leads_to_chapter=choice.leads_to_chapter,
            )
            candidate.choices_made.append(made)
            candidate.current_chapter = choice.leads_to_chapter
            candidate.visited_chapters.append(choice.leads_to_chapter)
            candidate.last_activity_at = moment
            candidate.structure_version = structure.version

            ending = _select_ending(structure, candidate, choice.leads_to_chapter)
            completed = ending is not None
            candidate.path_completion = next_completion(
                candidate.path_completion,
                len(candidate.choices_made),
                step_weight(structure, self.step_weight_override),
                completed=completed,
            )
            if ending is not None:
                if ending.id not in candidate.discovered_endings:
                    candidate.discovered_endings.append(ending.id)
                candidate.status = SessionStatus.COMPLETED
                candidate.session_end = moment

            with self._registry_lock:
                self._paths[key] = candidate
                if fresh:
                    self._session_index[key.session_id] = key

            resolvable = 0
            if self.consequence_engine is not None:
                resolvable = self.consequence_engine.on_transition(
                    key,
                    choice=choice,
                    chapter_id=choice.leads_to_chapter,
                    transition_index=len(candidate.choices_made),
                    reached_ending=completed,
                )

            if completed:
                logger.info(
                    "session completed story=%s session=%s ending=%s choices=%s",
                    key.story_id,
                    key.session_id,
                    ending.id,
                    len(candidate.choices_made),
                )

            return TransitionResult(
                path=candidate.model_copy(deep=True),
                choice=made,
                introduced_consequences=list(choice.consequences),
                ending_id=ending.id if ending is not None else None,
                completed=completed,
                resolvable_count=resolvable,
            )

    def _reject(self, key: SessionKey, choice_id: str, reason: str, *, detail: str | None = None) -> None:
        logger.info("transition rejected session=%s choice=%s reason=%s", key.session_id, choice_id, reason)
        raise InvalidChoiceError(choice_id, reason=reason, detail=detail)

    def end_session(self, key: SessionKey, *, now: datetime | None = None) -> ReaderPath:
        key = SessionKey(*key)
        with self._lock_for(key):
            with self._registry_lock:
                path = self._paths.get(key)
            if path is None:
                raise SessionNotFoundError(key.session_id)
            if path.status.is_terminal:
                raise SessionNotActiveError(key.session_id, status=path.status.value)
            moment = self._now(now)
            updated = path.model_copy(deep=True)
            updated.status = SessionStatus.ABANDONED
            updated.session_end = moment
            updated.last_activity_at = moment
            with self._registry_lock:
                self._paths[key] = updated
            if self.consequence_engine is not None:
                self.consequence_engine.close(key)
        logger.info("session ended without ending story=%s session=%s", key.story_id, key.session_id)
        return updated.model_copy(deep=True)

    def rate_session(self, key: SessionKey, rating: float) -> ReaderPath:
        key = SessionKey(*key)
        with self._lock_for(key):
            with self._registry_lock:
                path = self._paths.get(key)
            if path is None:
                raise SessionNotFoundError(key.session_id)
            updated = path.model_copy(update={"satisfaction_rating": max(0.0, min(5.0, float(rating)))}, deep=True)
            with self._registry_lock:
                self._paths[key] = updated
            return updated.model_copy(deep=True)

    def sweep_idle(self, now: datetime | None = None) -> list[ReaderPath]:
        moment = self._now(now)
        threshold = timedelta(seconds=self.idle_timeout_s)
        with self._registry_lock:
            keys = list(self._paths)
        swept: list[ReaderPath] = []
        for key in keys:
            with self._lock_for(key):
                with self._registry_lock:
                    path = self._paths.get(key)
                if path is None or path.status is not SessionStatus.ACTIVE:
                    continue
                if moment - as_utc(path.last_activity_at) <= threshold:
                    continue
                updated = path.model_copy(deep=True)
                updated.status = SessionStatus.ABANDONED
                updated.abandoned_at = moment
                with self._registry_lock:
                    self._paths[key] = updated
                if self.consequence_engine is not None:
                    self.consequence_engine.close(key)
                swept.append(updated.model_copy(deep=True))
        if swept:
            logger.info("idle sweep abandoned sessions count=%s", len(swept))
        return swept

    def snapshot(self, story_id: str) -> list[ReaderPath]:
        with self._registry_lock:
            keys = [key for key in self._paths if key.story_id == story_id]
        out: list[ReaderPath] = []
        for key in keys:
            with self._lock_for(key):
                with self._registry_lock:
                    path = self._paths.get(key)
                if path is not None:
                    out.append(path.model_copy(deep=True))
        out.sort(key=lambda item: (item.session_start, item.session_id))
        return out

    def character_snapshot(self, key: SessionKey) -> dict[str, dict[str, int]]:
        key = SessionKey(*key)
        with self._lock_for(key):
            with self._registry_lock:
                path = self._paths.get(key)
            if path is None:
                raise SessionNotFoundError(key.session_id)
            choice_ids = path.selected_choice_ids()
        return character_snapshot(self.structure_for(key.story_id), choice_ids)
