from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from choicebook.modules.consequences.engine import ConsequenceEngine, classify_resolution
from choicebook.modules.consequences.schemas import PendingConsequence
from choicebook.modules.paths.schemas import SessionKey
from choicebook.modules.paths.tracker import ReaderPathTracker
from choicebook.modules.structure.schemas import CharacterImpact, Consequence
from tests.support.stories import long_story, relationship_story


def _wired(structure) -> tuple[ReaderPathTracker, ConsequenceEngine]:
    structures = {structure.story_id: structure}
    engine = ConsequenceEngine(structure_provider=structures.get)
    tracker = ReaderPathTracker(consequence_engine=engine)
    tracker.register_structure(structure)
    return tracker, engine


def test_delayed_consequence_waits_for_a_later_chapter() -> None:
    tracker, engine = _wired(long_story())
    key = SessionKey("reader-a", "long_v1", "s-1")

    first = tracker.record_choice(key, "c1_light")
    assert first.resolvable_count == 0
    assert engine.resolve_consequences(key) == []
    assert [item.consequence.type for item in engine.pending(key)] == ["delayed", "ending_modifier"]
    assert engine.stats(key)["immediate_resolved"] == 1

    tracker.record_choice(key, "c2_on")
    due = engine.resolve_consequences(key)
    assert [item.description for item in due] == ["The keeper wakes"]
    assert due[0].resolved_in_chapter == "C3"
    assert due[0].at_ending is False
    assert due[0].resolution_type == "unexpected"
    assert [item.consequence.type for item in engine.pending(key)] == ["ending_modifier"]


def test_everything_left_is_resolved_at_the_ending() -> None:
    tracker, engine = _wired(long_story())
    key = SessionKey("reader-a", "long_v1", "s-1")

    tracker.record_choice(key, "c1_light")
    tracker.record_choice(key, "c2_on")
    engine.acknowledge(key, [item.resolution_id for item in engine.resolve_consequences(key)])
    final = tracker.record_choice(key, "c3_on")

    assert final.completed is True
    due = engine.resolve_consequences(key)
    assert [item.type for item in due] == ["ending_modifier"]
    assert due[0].at_ending is True
    assert engine.pending(key) == []


def test_direct_ending_drains_fresh_consequences() -> None:
    tracker, engine = _wired(relationship_story())
    key = SessionKey("reader-a", "mara_v1", "s-1")

    tracker.record_choice(key, "c1_kind")
    assert engine.resolve_consequences(key) == []
    tracker.record_choice(key, "c2_cross")

    due = engine.resolve_consequences(key)
    assert [item.source_choice_id for item in due] == ["c1_kind"]
    assert due[0].resolution_type == "positive"
    assert due[0].affects_character == "Mara"


def test_resolutions_are_redelivered_until_acknowledged() -> None:
    tracker, engine = _wired(long_story())
    key = SessionKey("reader-a", "long_v1", "s-1")
    for choice_id in ("c1_light", "c2_on"):
        tracker.record_choice(key, choice_id)

    first = engine.resolve_consequences(key)
    again = engine.resolve_consequences(key)
    assert [item.resolution_id for item in first] == [item.resolution_id for item in again]

    assert engine.acknowledge(key, [first[0].resolution_id]) == 1
    assert engine.acknowledge(key, [first[0].resolution_id]) == 0
    assert engine.resolve_consequences(key) == []
    assert engine.stats(key)["acknowledged"] == 1
    assert engine.stats(key)["resolved"] == 1


def test_orphaned_reference_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    tracker, engine = _wired(long_story(orphan_thread="ghost_debt"))
    key = SessionKey("reader-a", "long_v1", "s-1")

    with caplog.at_level(logging.WARNING, logger="choicebook.modules.consequences.engine"):
        for choice_id in ("c1_light", "c2_on", "c3_on"):
            tracker.record_choice(key, choice_id)

    descriptions = [item.description for item in engine.resolve_consequences(key)]
    assert "A forgotten debt" not in descriptions
    assert descriptions == ["The keeper wakes", "The lantern's light lingers"]
    assert engine.stats(key)["orphaned"] == 1
    assert any("ORPHANED_REFERENCE" in record.getMessage() for record in caplog.records)


def test_sessions_do_not_share_ledgers() -> None:
    tracker, engine = _wired(long_story())
    lit = SessionKey("reader-a", "long_v1", "lit")
    dark = SessionKey("reader-b", "long_v1", "dark")
    for choice_id in ("c1_light", "c2_on"):
        tracker.record_choice(lit, choice_id)
    for choice_id in ("c1_dark", "c2_on"):
        tracker.record_choice(dark, choice_id)

    assert len(engine.resolve_consequences(lit)) == 1
    assert engine.resolve_consequences(dark) == []
    engine.discard(lit)
    assert engine.resolve_consequences(lit) == []


def test_classify_resolution_from_impacts() -> None:
    consequence = Consequence(type="delayed", description="x", affects_character="Ilse")

    def _pending(tone: str, impacts: tuple[CharacterImpact, ...]) -> PendingConsequence:
        return PendingConsequence(
            consequence_id="c#0@1",
            consequence=consequence,
            source_choice_id="c",
            introduced_in_chapter="C1",
            introduced_at=1,
            emotional_tone=tone,
            impacts=impacts,
        )

    hurt = (CharacterImpact(character_name="Ilse", relationship_change=-3),)
    mixed = (
        CharacterImpact(character_name="Ilse", relationship_change=4),
        CharacterImpact(character_name="Ilse", trust_change=-2),
    )
    assert classify_resolution(_pending("positive", hurt)) == "negative"
    assert classify_resolution(_pending("neutral", mixed)) == "mixed"
    assert classify_resolution(_pending("mysterious", hurt)) == "unexpected"
    assert classify_resolution(_pending("positive", ())) == "positive"


def test_ledger_is_dropped_once_terminal_session_is_delivered() -> None:
    tracker, engine = _wired(long_story())
    key = SessionKey("reader-a", "long_v1", "s-1")
    for choice_id in ("c1_light", "c2_on", "c3_on"):
        tracker.record_choice(key, choice_id)

    due = engine.resolve_consequences(key)
    assert len(due) == 2
    assert key in engine._ledgers

    engine.acknowledge(key, [due[0].resolution_id])
    assert key in engine._ledgers
    engine.acknowledge(key, [due[1].resolution_id])
    assert key not in engine._ledgers
    assert engine.resolve_consequences(key) == []
    assert engine.stats(key)["pending"] == 0


def test_ended_and_swept_sessions_release_their_ledgers() -> None:
    structure = long_story()
    engine = ConsequenceEngine(structure_provider={structure.story_id: structure}.get)
    tracker = ReaderPathTracker(consequence_engine=engine, idle_timeout_s=60)
    tracker.register_structure(structure)
    ended = SessionKey("reader-a", "long_v1", "ended")
    idle = SessionKey("reader-b", "long_v1", "idle")
    other = SessionKey("reader-c", "long_v1", "other")
    for key in (ended, idle, other):
        tracker.record_choice(key, "c1_light")
    assert engine.pending(ended)

    tracker.end_session(ended)
    assert ended not in engine._ledgers
    assert engine.pending(ended) == []

    swept = tracker.sweep_idle(tracker.get_path("idle").last_activity_at + timedelta(minutes=5))
    assert {path.session_id for path in swept} == {"idle", "other"}
    assert set(engine._ledgers) == set()

    # an ending with nothing left to deliver closes the ledger right away
    quiet = SessionKey("reader-d", "long_v1", "quiet")
    for choice_id in ("c1_dark", "c2_on", "c3_on"):
        tracker.record_choice(quiet, choice_id)
    assert engine.resolve_consequences(quiet) == []
    assert quiet not in engine._ledgers
