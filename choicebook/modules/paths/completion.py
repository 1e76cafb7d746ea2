from __future__ import annotations

from choicebook.modules.structure.schemas import ChoiceStructure


def step_weight(structure: ChoiceStructure, override: float | None = None) -> float:
    if override is not None and float(override) > 0:
        return float(override)
    return 100.0 / max(1.0, structure.estimated_path_length())


def next_completion(previous: float, choices_made: int, weight: float, *, completed: bool = False) -> float:
    """Progress estimate after ``choices_made`` choices; never lower than ``previous``."""
    if completed:
        return 100.0
    estimate = min(float(choices_made) * float(weight), 100.0)
    return round(max(float(previous), estimate), 4)
