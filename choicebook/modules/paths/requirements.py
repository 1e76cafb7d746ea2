from __future__ import annotations

from collections.abc import Iterable

from choicebook.modules.paths.schemas import ReaderPath
from choicebook.modules.structure.schemas import ChoiceRequirement, ChoiceStructure, EndingChapter


def character_snapshot(structure: ChoiceStructure, choice_ids: Iterable[str]) -> dict[str, dict[str, int]]:
    """Relationship and trust totals per character for the given selections."""
    out: dict[str, dict[str, int]] = {}
    for choice_id in choice_ids:
        found = structure.find_choice(choice_id)
        if found is None:
            continue
        for impact in found[1].character_impacts:
            totals = out.setdefault(impact.character_name, {"relationship": 0, "trust": 0})
            totals["relationship"] += int(impact.relationship_change)
            totals["trust"] += int(impact.trust_change)
    return {name: out[name] for name in sorted(out)}


def _as_number(value: object) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_flag(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "no"}
    return bool(value)


def _compare_membership(members: list[str], requirement: ChoiceRequirement) -> bool:
    present_count = members.count(requirement.target)
    if requirement.operator == "contains":
        needle = requirement.value if isinstance(requirement.value, str) and requirement.value else requirement.target
        return needle in members
    if requirement.operator == "equals":
        return (present_count > 0) == _as_flag(requirement.value)
    expected = _as_number(requirement.value)
    if expected is None:
        return False
    if requirement.operator == "greater_than":
        return present_count > expected
    return present_count < expected


def _compare_number(actual: float, requirement: ChoiceRequirement) -> bool:
    expected = _as_number(requirement.value)
    if expected is None:
        return False
    if requirement.operator == "equals":
        return actual == expected
    if requirement.operator == "greater_than":
        return actual > expected
    if requirement.operator == "less_than":
        return actual < expected
    # "contains" on a scalar reads as an inclusive lower bound.
    return actual >= expected


def requirement_satisfied(
    requirement: ChoiceRequirement,
    *,
    structure: ChoiceStructure,
    choice_ids: list[str],
    visited_chapters: list[str],
) -> bool:
    if requirement.type == "specific_choice":
        return _compare_membership(choice_ids, requirement)
    if requirement.type == "path_taken":
        return _compare_membership(visited_chapters, requirement)
    if requirement.type == "choice_count":
        return _compare_number(float(len(choice_ids)), requirement)

    snapshot = character_snapshot(structure, choice_ids)
    relationship = snapshot.get(requirement.target, {}).get("relationship", 0)
    return _compare_number(float(relationship), requirement)


def ending_satisfied(ending: EndingChapter, *, structure: ChoiceStructure, path: ReaderPath) -> bool:
    choice_ids = path.selected_choice_ids()
    return all(
        requirement_satisfied(
            requirement,
            structure=structure,
            choice_ids=choice_ids,
            visited_chapters=path.visited_chapters,
        )
        for requirement in ending.requirements
    )
