from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from threading import Lock

from choicebook.modules.consequences.errors import OrphanedReferenceError
from choicebook.modules.consequences.schemas import PendingConsequence, Resolution, ResolutionType
from choicebook.modules.paths.schemas import SessionKey
from choicebook.modules.structure.schemas import Choice, ChoiceStructure

logger = logging.getLogger(__name__)

StructureProvider = Callable[[str], ChoiceStructure | None]


@dataclass(slots=True)
class _SessionLedger:
    pending: list[PendingConsequence] = field(default_factory=list)
    outbox: list[Resolution] = field(default_factory=list)
    resolved_ids: set[str] = field(default_factory=set)
    immediate_resolved: int = 0
    orphaned: int = 0
    acknowledged: int = 0
    closed: bool = False


def classify_resolution(pending: PendingConsequence) -> ResolutionType:
    if pending.emotional_tone == "mysterious":
        return "unexpected"

    character = pending.consequence.affects_character
    if character:
        deltas = [
            impact.relationship_change + impact.trust_change
            for impact in pending.impacts
            if impact.character_name == character
        ]
        if any(delta > 0 for delta in deltas) and any(delta < 0 for delta in deltas):
            return "mixed"
        net = sum(deltas)
        if net > 0:
            return "positive"
        if net < 0:
            return "negative"

    if pending.emotional_tone == "positive":
        return "positive"
    if pending.emotional_tone == "negative":
        return "negative"
    return "mixed"


def _is_resolvable(pending: PendingConsequence, *, transition_index: int, reached_ending: bool) -> bool:
    if reached_ending:
        return True
    if pending.consequence.type == "ending_modifier":
        return False
    # one full chapter must lie between introduction and resolution
    return transition_index > pending.introduced_at


class ConsequenceEngine:
    """Per-session queue of consequences waiting for their narrative payoff.

    Draining happens on every chapter transition. Drained consequences are
    marked resolved once and parked in an outbox until the caller confirms
    delivery with ``acknowledge``; unacknowledged resolutions are offered
    again by ``resolve_consequences``.
    """

    def __init__(self, structure_provider: StructureProvider | None = None) -> None:
        self._structure_provider = structure_provider
        self._lock = Lock()
        self._ledgers: dict[SessionKey, _SessionLedger] = {}

    def _ledger(self, key: SessionKey) -> _SessionLedger:
        ledger = self._ledgers.get(key)
        if ledger is None:
            ledger = _SessionLedger()
            self._ledgers[key] = ledger
        return ledger

    def _orphan_reference(self, structure: ChoiceStructure | None, pending: PendingConsequence) -> OrphanedReferenceError | None:
        if structure is None:
            return None
        consequence = pending.consequence
        if consequence.affects_character and consequence.affects_character not in structure.character_names():
            return OrphanedReferenceError(pending.consequence_id, kind="character", name=consequence.affects_character)
        if consequence.affects_plot_thread and consequence.affects_plot_thread not in structure.plot_threads:
            return OrphanedReferenceError(pending.consequence_id, kind="plot_thread", name=consequence.affects_plot_thread)
        return None

    def on_transition(
        self,
        key: SessionKey,
        *,
        choice: Choice,
        chapter_id: str,
        transition_index: int,
        reached_ending: bool = False,
    ) -> int:
        """Queue the choice's deferred consequences and drain whatever became due.

        Returns the number of resolutions waiting in the session outbox.
        """
        key = SessionKey(*key)
        structure = self._structure_provider(key.story_id) if self._structure_provider else None
        with self._lock:
            ledger = self._ledger(key)
            for idx, consequence in enumerate(choice.consequences):
                if consequence.type == "immediate":
                    ledger.immediate_resolved += 1
                    continue
                ledger.pending.append(
                    PendingConsequence(
                        consequence_id=f"{choice.id}#{idx}@{transition_index}",
                        consequence=consequence,
                        source_choice_id=choice.id,
                        introduced_in_chapter=chapter_id,
                        introduced_at=transition_index,
                        emotional_tone=choice.emotional_tone,
                        impacts=tuple(choice.character_impacts),
                    )
                )

            still_pending: list[PendingConsequence] = []
            for pending in ledger.pending:
                if not _is_resolvable(pending, transition_index=transition_index, reached_ending=reached_ending):
                    still_pending.append(pending)
                    continue
                if pending.consequence_id in ledger.resolved_ids:
                    continue
                orphan = self._orphan_reference(structure, pending)
                if orphan is not None:
                    ledger.orphaned += 1
                    ledger.resolved_ids.add(pending.consequence_id)
                    logger.warning("%s session=%s code=%s", orphan.message, key.session_id, orphan.code)
                    continue
                ledger.resolved_ids.add(pending.consequence_id)
                ledger.outbox.append(
                    Resolution(
                        resolution_id=f"{key.session_id}:{pending.consequence_id}",
                        consequence_id=pending.consequence_id,
                        source_choice_id=pending.source_choice_id,
                        type=pending.consequence.type,
                        resolution_type=classify_resolution(pending),
                        description=pending.consequence.description,
                        magnitude=pending.consequence.magnitude,
                        affects_character=pending.consequence.affects_character,
                        affects_plot_thread=pending.consequence.affects_plot_thread,
                        resolved_in_chapter=chapter_id,
                        at_ending=reached_ending,
                    )
                )
            ledger.pending = still_pending
            if reached_ending:
                ledger.closed = True
            outstanding = len(ledger.outbox)
            self._drop_if_settled(key, ledger)
            return outstanding

    def _drop_if_settled(self, key: SessionKey, ledger: _SessionLedger) -> None:
        # caller holds self._lock
        if ledger.closed and not ledger.outbox:
            self._ledgers.pop(key, None)

    def close(self, key: SessionKey) -> None:
        """Mark the session terminal; its ledger goes away once nothing awaits delivery."""
        key = SessionKey(*key)
        with self._lock:
            ledger = self._ledgers.get(key)
            if ledger is None:
                return
            ledger.closed = True
            self._drop_if_settled(key, ledger)

    def resolve_consequences(self, key: SessionKey) -> list[Resolution]:
        with self._lock:
            ledger = self._ledgers.get(SessionKey(*key))
            if ledger is None:
                return []
            return [item.model_copy() for item in ledger.outbox]

    def acknowledge(self, key: SessionKey, resolution_ids: Iterable[str]) -> int:
        wanted = {str(item) for item in resolution_ids}
        with self._lock:
            ledger = self._ledgers.get(SessionKey(*key))
            if ledger is None or not wanted:
                return 0
            kept = [item for item in ledger.outbox if item.resolution_id not in wanted]
            removed = len(ledger.outbox) - len(kept)
            ledger.outbox = kept
            ledger.acknowledged += removed
            self._drop_if_settled(SessionKey(*key), ledger)
            return removed

    def pending(self, key: SessionKey) -> list[PendingConsequence]:
        with self._lock:
            ledger = self._ledgers.get(SessionKey(*key))
            return list(ledger.pending) if ledger else []

    def stats(self, key: SessionKey) -> dict:
        with self._lock:
            ledger = self._ledgers.get(SessionKey(*key)) or _SessionLedger()
            return {
                "pending": len(ledger.pending),
                "awaiting_delivery": len(ledger.outbox),
                "resolved": len(ledger.resolved_ids) - ledger.orphaned,
                "acknowledged": int(ledger.acknowledged),
                "orphaned": int(ledger.orphaned),
                "immediate_resolved": int(ledger.immediate_resolved),
            }

    def discard(self, key: SessionKey) -> None:
        with self._lock:
            self._ledgers.pop(SessionKey(*key), None)

    def reset(self) -> None:
        with self._lock:
            self._ledgers.clear()
