from __future__ import annotations

import pytest
from pydantic import ValidationError

from choicebook.modules.structure.builder import (
    ChoiceStructureBuilder,
    build_choice_structure,
    draft_choice_structure,
)
from choicebook.modules.structure.errors import DanglingChoiceError, DuplicateIdError, UnknownChapterError
from tests.support.stories import linear_builder, linear_payload, linear_story, relationship_story


def test_linear_structure_queries() -> None:
    structure = linear_story()

    assert structure.chapter_ids() == ["C1", "C2", "END"]
    assert structure.chapter_for("c1_forward") == "C1"
    assert structure.destination_of("c2_finish") == "END"
    assert structure.choice_point_for("c1_around").id == "cp_c1"
    assert [choice.id for choice in structure.choices_at("C1")] == ["c1_forward", "c1_around"]
    assert structure.successors("C1") == ["C2"]
    assert structure.is_ending_chapter("END") is True
    assert structure.endings_reachable_from("C1") == frozenset({"E1"})
    assert structure.endings_reachable_from("END") == frozenset({"E1"})
    assert structure.estimated_path_length() == 2.0


def test_connections_are_derived_from_choices_and_deduplicated() -> None:
    builder = linear_builder()
    builder.add_connection({"from_chapter": "C1", "to_chapter": "C2", "via_choice": "c1_forward"})
    structure = builder.build()

    edges = [(item.from_chapter, item.to_chapter, item.via_choice) for item in structure.connections()]
    assert edges == [
        ("C1", "C2", "c1_forward"),
        ("C1", "C2", "c1_around"),
        ("C2", "END", "c2_finish"),
    ]


def test_build_rejects_choice_to_missing_chapter() -> None:
    builder = linear_builder()
    builder.add_choice_point(
        {
            "id": "cp_side",
            "chapter_id": "C2",
            "choices": [{"id": "c2_void", "text": "Step into the void", "leads_to_chapter": "NOWHERE"}],
        }
    )

    with pytest.raises(DanglingChoiceError) as exc_info:
        builder.build()
    assert exc_info.value.code == "DANGLING_CHOICE"
    assert exc_info.value.target == "NOWHERE"

    # the same graph is still available unchecked for validation
    draft = builder.draft()
    assert draft.has_choice("c2_void")


def test_build_rejects_unknown_start_chapter() -> None:
    builder = ChoiceStructureBuilder("broken_start", "PROLOGUE")
    builder.add_choice_point(
        {"id": "cp_c1", "chapter_id": "C1", "choices": [{"id": "c1", "text": "Go", "leads_to_chapter": "END"}]}
    )
    builder.add_ending({"id": "E1", "chapter_id": "END"})

    with pytest.raises(UnknownChapterError) as exc_info:
        builder.build()
    assert exc_info.value.location == "start_chapter_id"


def test_build_rejects_duplicate_choice_ids() -> None:
    builder = linear_builder()
    builder.add_choice_point(
        {
            "id": "cp_extra",
            "chapter_id": "C2",
            "choices": [{"id": "c1_forward", "text": "Again", "leads_to_chapter": "END"}],
        }
    )

    with pytest.raises(DuplicateIdError):
        builder.build()


def test_build_rejects_ending_requirement_on_unknown_choice() -> None:
    builder = linear_builder()
    builder.add_ending(
        {
            "id": "E_ghost",
            "chapter_id": "END",
            "requirements": [{"type": "specific_choice", "target": "c_missing"}],
        }
    )

    with pytest.raises(DanglingChoiceError):
        builder.build()


def test_from_structure_bumps_version_and_keeps_parts() -> None:
    structure = relationship_story()
    rebuilt = ChoiceStructureBuilder.from_structure(structure).build()

    assert rebuilt.version == structure.version + 1
    assert rebuilt.characters == structure.characters
    assert rebuilt.plot_threads == ["river_debt"]
    assert rebuilt.character_names() == {"Mara"}


def test_checksum_is_stable_across_serialization() -> None:
    payload = linear_payload()
    first = build_choice_structure(payload)
    second = build_choice_structure(dict(payload))

    assert first.checksum() == second.checksum()
    assert first.checksum() != relationship_story().checksum()


def test_structure_is_immutable() -> None:
    structure = linear_story()
    with pytest.raises(ValidationError):
        structure.start_chapter_id = "C2"  # type: ignore[misc]


def test_draft_accepts_inconsistent_documents() -> None:
    payload = linear_payload()
    payload["choice_points"][0]["choices"][0]["leads_to_chapter"] = "NOWHERE"

    draft = draft_choice_structure(payload)
    assert draft.destination_of("c1_forward") == "NOWHERE"
    with pytest.raises(DanglingChoiceError):
        build_choice_structure(payload)
