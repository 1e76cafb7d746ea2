from __future__ import annotations

import logging
import uuid
from datetime import datetime
from threading import Event, Lock

from sqlalchemy.orm import Session

from choicebook.modules.analytics.engine import analyze_paths
from choicebook.modules.analytics.schemas import PathAnalysisReport
from choicebook.modules.consequences.engine import ConsequenceEngine
from choicebook.modules.consequences.schemas import Resolution
from choicebook.modules.generation.base import ContentGenerator
from choicebook.modules.generation.errors import ContentGeneratorError
from choicebook.modules.generation.providers import get_content_generator
from choicebook.modules.generation.schemas import BranchingStrategy, NarrationResult
from choicebook.modules.generation.service import NarrationService
from choicebook.modules.paths.errors import PathError, SessionNotFoundError, UnknownStoryError
from choicebook.modules.paths.schemas import ReaderPath, SessionKey, TransitionResult
from choicebook.modules.paths.tracker import ReaderPathTracker
from choicebook.modules.store import repository
from choicebook.modules.structure.builder import build_choice_structure, draft_choice_structure
from choicebook.modules.structure.schemas import ChoiceStructure
from choicebook.modules.runtime import telemetry
from choicebook.modules.validation.engine import validate_structure
from choicebook.modules.validation.schemas import ChoiceValidation

logger = logging.getLogger(__name__)


class ChoiceBookRuntime:
    """Process-wide facade wiring the tracker, consequence engine, store and generator.

    In-memory state is authoritative for running sessions; every accepted
    transition is written through to the store inside the caller's
    transaction. Stories are loaded from the store on first use.
    """

    def __init__(self, *, generator: ContentGenerator | None = None) -> None:
        self.consequences = ConsequenceEngine(structure_provider=self._structure_or_none)
        self.tracker = ReaderPathTracker(consequence_engine=self.consequences)
        self.generator = generator or get_content_generator()
        self.narration = NarrationService(self.tracker, self.consequences, self.generator)
        self._hydrate_lock = Lock()
        self._hydrated: set[str] = set()

    def _structure_or_none(self, story_id: str) -> ChoiceStructure | None:
        try:
            return self.tracker.structure_for(story_id)
        except UnknownStoryError:
            return None

    def publish_structure(self, db: Session, payload: dict) -> ChoiceStructure:
        story_id = str(payload.get("story_id") or "")
        self.ensure_story(db, story_id, required=False)
        document = dict(payload)
        document["version"] = repository.latest_structure_version(db, story_id) + 1
        structure = build_choice_structure(document)
        repository.save_choice_structure(db, structure)
        self.tracker.register_structure(structure)
        with self._hydrate_lock:
            self._hydrated.add(structure.story_id)
        return structure

    def ensure_story(self, db: Session, story_id: str, *, required: bool = True) -> ChoiceStructure | None:
        with self._hydrate_lock:
            if story_id in self._hydrated:
                return self._structure_or_none(story_id)
            structure = repository.get_choice_structure(db, story_id)
            if structure is None:
                if required:
                    raise UnknownStoryError(story_id)
                return None
            self.tracker.register_structure(structure)
            loaded = 0
            for path in repository.list_reader_paths(db, story_id):
                if self.tracker.find_session(path.session_id) is None:
                    self.tracker.load_path(path)
                    loaded += 1
            self._hydrated.add(story_id)
        logger.info("story hydrated story=%s version=%s paths=%s", story_id, structure.version, loaded)
        return structure

    def _key(self, db: Session, session_id: str) -> SessionKey:
        key = self.tracker.find_session(session_id)
        if key is not None:
            return key
        stored = repository.get_reader_path(db, session_id)
        if stored is not None:
            self.ensure_story(db, stored.story_id)
            key = self.tracker.find_session(session_id)
        if key is None:
            raise SessionNotFoundError(session_id)
        return key

    def open_session(
        self,
        db: Session,
        *,
        user_id: str,
        story_id: str,
        session_id: str | None = None,
        playthrough_count: int | None = None,
    ) -> ReaderPath:
        self.ensure_story(db, story_id)
        path = self.tracker.open_session(
            user_id,
            story_id,
            session_id or uuid.uuid4().hex,
            playthrough_count=playthrough_count,
        )
        repository.save_reader_path(db, path)
        return path

    def get_path(self, db: Session, session_id: str) -> ReaderPath:
        self._key(db, session_id)
        return self.tracker.get_path(session_id)

    def record_choice(
        self,
        db: Session,
        *,
        session_id: str,
        choice_id: str,
        time_taken_seconds: float = 0.0,
        user_id: str | None = None,
        story_id: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        try:
            try:
                key = self._key(db, session_id)
            except SessionNotFoundError:
                if not user_id or not story_id:
                    raise
                self.ensure_story(db, story_id)
                key = SessionKey(user_id, story_id, session_id)
            result = self.tracker.record_choice(key, choice_id, time_taken_seconds=time_taken_seconds, now=now)
        except PathError as exc:
            telemetry.record_rejection(error_code=exc.code)
            raise

        repository.save_reader_path(db, result.path)
        repository.append_choice_event(db, story_id=key.story_id, session_id=key.session_id, choice=result.choice)
        telemetry.record_transition(time_taken_s=result.choice.time_taken_seconds, ending_id=result.ending_id)
        return result

    def end_session(self, db: Session, session_id: str) -> ReaderPath:
        path = self.tracker.end_session(self._key(db, session_id))
        repository.save_reader_path(db, path)
        telemetry.record_abandoned()
        return path

    def rate_session(self, db: Session, session_id: str, rating: float) -> ReaderPath:
        path = self.tracker.rate_session(self._key(db, session_id), rating)
        repository.save_reader_path(db, path)
        return path

    def sweep_idle(self, db: Session, *, now: datetime | None = None) -> list[ReaderPath]:
        swept = self.tracker.sweep_idle(now)
        for path in swept:
            repository.save_reader_path(db, path)
        if swept:
            telemetry.record_abandoned(len(swept))
        return swept

    def consequences_for(self, db: Session, session_id: str) -> tuple[list[Resolution], dict]:
        key = self._key(db, session_id)
        return self.consequences.resolve_consequences(key), self.consequences.stats(key)

    def acknowledge(self, db: Session, session_id: str, resolution_ids: list[str]) -> int:
        return self.consequences.acknowledge(self._key(db, session_id), resolution_ids)

    def analyze_story(
        self,
        db: Session,
        story_id: str,
        *,
        policy: dict | None = None,
        cancel_event: Event | None = None,
    ) -> PathAnalysisReport:
        structure = self.ensure_story(db, story_id)
        report = analyze_paths(structure, self.tracker.snapshot(story_id), policy=policy, cancel_event=cancel_event)
        repository.save_analytics_snapshot(db, report)
        return report

    def validate_draft(
        self,
        payload: dict,
        *,
        policy: dict | None = None,
        cancel_event: Event | None = None,
    ) -> ChoiceValidation:
        return validate_structure(draft_choice_structure(payload), policy=policy, cancel_event=cancel_event)

    async def prepare_next_chapter(
        self,
        db: Session,
        session_id: str,
        *,
        choice_count: int = 2,
        branching_strategy: BranchingStrategy | None = None,
    ) -> NarrationResult:
        key = self._key(db, session_id)
        try:
            return await self.narration.prepare_next_chapter(
                key,
                choice_count=choice_count,
                branching_strategy=branching_strategy,
                persist=lambda structure: repository.save_choice_structure(db, structure),
            )
        except ContentGeneratorError:
            telemetry.record_generation_failure()
            raise

    async def prepare_ending(self, db: Session, session_id: str) -> str:
        key = self._key(db, session_id)
        try:
            return await self.narration.prepare_ending(key)
        except ContentGeneratorError:
            telemetry.record_generation_failure()
            raise


_runtime: ChoiceBookRuntime | None = None
_runtime_lock = Lock()


def get_runtime() -> ChoiceBookRuntime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = ChoiceBookRuntime()
        return _runtime


def reset_runtime(generator: ContentGenerator | None = None) -> ChoiceBookRuntime:
    global _runtime
    with _runtime_lock:
        _runtime = ChoiceBookRuntime(generator=generator)
    telemetry.reset_runtime_telemetry()
    return _runtime
