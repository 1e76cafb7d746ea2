from __future__ import annotations

import logging
from collections import Counter
from threading import Event
from typing import Any

from choicebook.config import settings
from choicebook.modules.analytics.errors import AnalysisCancelledError
from choicebook.modules.structure.schemas import ChoiceStructure
from choicebook.modules.validation.schemas import (
    ChoiceValidation,
    IssueSeverity,
    IssueType,
    PathAnalysis,
    ValidationIssue,
    ValidationWarning,
    WarningType,
)

logger = logging.getLogger(__name__)

_CANCEL_CHECK_EVERY = 256


def _safe_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return int(default)


def _safe_float(value: object, default: float) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return float(default)


def normalize_validation_policy(policy: dict | None) -> dict[str, Any]:
    raw = policy if isinstance(policy, dict) else {}
    return {
        "max_choices_per_point": max(
            2, min(_safe_int(raw.get("max_choices_per_point"), settings.validation_max_choices_per_point), 12)
        ),
        "unbalanced_path_ratio": max(
            1.0, min(_safe_float(raw.get("unbalanced_path_ratio"), settings.validation_unbalanced_path_ratio), 20.0)
        ),
        "max_enumerated_paths": max(
            1, min(_safe_int(raw.get("max_enumerated_paths"), settings.validation_max_enumerated_paths), 100_000)
        ),
    }


def _issue(
    *,
    type: IssueType,
    severity: IssueSeverity,
    location: str,
    message: str,
    suggestion: str | None = None,
) -> ValidationIssue:
    return ValidationIssue(type=type, severity=severity, location=location, message=message, suggestion=suggestion)


def _warning(*, type: WarningType, location: str, message: str, suggestion: str | None = None) -> ValidationWarning:
    return ValidationWarning(type=type, location=location, message=message, suggestion=suggestion)


def _scc_components(nodes: list[str], adjacency: dict[str, list[str]]) -> list[set[str]]:
    # iterative Tarjan; long chapter chains must not hit the recursion limit
    index = 0
    stack: list[str] = []
    on_stack: set[str] = set()
    indices: dict[str, int] = {}
    low: dict[str, int] = {}
    out: list[set[str]] = []

    for root in nodes:
        if root in indices:
            continue
        indices[root] = low[root] = index
        index += 1
        stack.append(root)
        on_stack.add(root)
        work: list[tuple[str, int]] = [(root, 0)]

        while work:
            node, pos = work[-1]
            successors = adjacency.get(node, [])
            if pos < len(successors):
                work[-1] = (node, pos + 1)
                nxt = successors[pos]
                if nxt not in indices:
                    indices[nxt] = low[nxt] = index
                    index += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, 0))
                elif nxt in on_stack:
                    low[node] = min(low[node], indices[nxt])
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == indices[node]:
                component: set[str] = set()
                while True:
                    w = stack.pop()
                    on_stack.remove(w)
                    component.add(w)
                    if w == node:
                        break
                out.append(component)
    return out


def _reachable(origins: list[str], adjacency: dict[str, list[str]]) -> set[str]:
    seen: set[str] = set()
    stack = list(origins)
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        for nxt in adjacency.get(current, []):
            if nxt not in seen:
                stack.append(nxt)
    return seen


class ValidationEngine:
    """Static checks over a (possibly unbuilt) choice structure.

    Findings are data, never exceptions; only a cancelled run raises.
    """

    def __init__(self, policy: dict | None = None) -> None:
        self.policy = normalize_validation_policy(policy)

    @staticmethod
    def _check_cancel(cancel_event: Event | None, stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("validation cancelled stage=%s", stage)
            raise AnalysisCancelledError(stage="validation")

    def validate(self, structure: ChoiceStructure, *, cancel_event: Event | None = None) -> ChoiceValidation:
        chapter_ids = structure.chapter_ids()
        known = set(chapter_ids)
        adjacency = {chapter_id: structure.successors(chapter_id) for chapter_id in chapter_ids}
        ending_chapters = {ending.chapter_id for ending in structure.endings}

        errors: list[ValidationIssue] = []
        errors.extend(self._broken_choices(structure, known))
        self._check_cancel(cancel_event, "broken_choices")
        errors.extend(self._unreachable_chapters(structure, chapter_ids, adjacency))
        self._check_cancel(cancel_event, "reachability")
        cycle_issues, trapped = self._circular_references(chapter_ids, adjacency, ending_chapters)
        errors.extend(cycle_issues)
        self._check_cancel(cancel_event, "cycles")
        errors.extend(self._missing_endings(structure, chapter_ids, adjacency, ending_chapters, trapped))
        self._check_cancel(cancel_event, "endings")

        path_analysis, complete_lengths = self._path_analysis(structure, adjacency, ending_chapters, cancel_event)

        warnings: list[ValidationWarning] = []
        warnings.extend(self._choice_warnings(structure))
        if complete_lengths:
            shortest = max(1, min(complete_lengths))
            longest = max(complete_lengths)
            if longest / shortest > self.policy["unbalanced_path_ratio"]:
                warnings.append(
                    _warning(
                        type="unbalanced_paths",
                        location=structure.start_chapter_id,
                        message=(
                            f"longest route to an ending takes {longest} choices, shortest takes {min(complete_lengths)}"
                        ),
                        suggestion="Add choices to the short branches or merge the long ones back earlier.",
                    )
                )

        suggestions: list[str] = []
        for finding in [*errors, *warnings]:
            if finding.suggestion and finding.suggestion not in suggestions:
                suggestions.append(finding.suggestion)

        is_valid = not any(issue.severity in {"critical", "major"} for issue in errors)
        return ChoiceValidation(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            path_analysis=path_analysis,
        )

    def _broken_choices(self, structure: ChoiceStructure, known: set[str]) -> list[ValidationIssue]:
        out: list[ValidationIssue] = []
        seen_choices: set[str] = set()
        all_choice_ids = {choice.id for point in structure.choice_points for choice in point.choices}
        for point in structure.choice_points:
            for choice in point.choices:
                location = f"choice_points[{point.id}].choices[{choice.id}]"
                if choice.id in seen_choices:
                    out.append(
                        _issue(
                            type="broken_choice",
                            severity="critical",
                            location=location,
                            message=f"choice id '{choice.id}' is declared more than once",
                            suggestion="Give every choice a unique id.",
                        )
                    )
                seen_choices.add(choice.id)
                if choice.leads_to_chapter not in known:
                    out.append(
                        _issue(
                            type="broken_choice",
                            severity="critical",
                            location=location,
                            message=f"choice '{choice.id}' leads to unknown chapter '{choice.leads_to_chapter}'",
                            suggestion="Point the choice at an existing chapter or add the missing chapter.",
                        )
                    )
                if choice.requires_previous_choice and choice.requires_previous_choice not in all_choice_ids:
                    out.append(
                        _issue(
                            type="broken_choice",
                            severity="critical",
                            location=location,
                            message=(
                                f"choice '{choice.id}' requires unknown choice '{choice.requires_previous_choice}'"
                            ),
                            suggestion="Remove the precondition or reference an existing choice.",
                        )
                    )
        for idx, connection in enumerate(structure.path_connections):
            missing = [item for item in (connection.from_chapter, connection.to_chapter) if item not in known]
            if missing:
                out.append(
                    _issue(
                        type="broken_choice",
                        severity="critical",
                        location=f"path_connections[{idx}]",
                        message=f"connection via '{connection.via_choice}' references unknown chapter(s) {missing}",
                        suggestion="Remove the connection or add the missing chapter.",
                    )
                )
        return out

    def _unreachable_chapters(
        self,
        structure: ChoiceStructure,
        chapter_ids: list[str],
        adjacency: dict[str, list[str]],
    ) -> list[ValidationIssue]:
        incoming: Counter[str] = Counter()
        for targets in adjacency.values():
            incoming.update(targets)
        reachable = _reachable([structure.start_chapter_id], adjacency)

        out: list[ValidationIssue] = []
        for chapter_id in chapter_ids:
            if chapter_id == structure.start_chapter_id or chapter_id in reachable:
                continue
            if incoming.get(chapter_id, 0) == 0:
                message = f"chapter '{chapter_id}' has no incoming connection"
            else:
                message = f"chapter '{chapter_id}' is only reachable from unreachable chapters"
            out.append(
                _issue(
                    type="unreachable_chapter",
                    severity="critical",
                    location=chapter_id,
                    message=message,
                    suggestion="Connect the chapter to the story through a choice, or remove it.",
                )
            )
        return out

    def _circular_references(
        self,
        chapter_ids: list[str],
        adjacency: dict[str, list[str]],
        ending_chapters: set[str],
    ) -> tuple[list[ValidationIssue], set[str]]:
        out: list[ValidationIssue] = []
        trapped: set[str] = set()
        for component in _scc_components(chapter_ids, adjacency):
            has_cycle = len(component) > 1
            if len(component) == 1:
                node_id = next(iter(component))
                has_cycle = node_id in adjacency.get(node_id, [])
            if not has_cycle:
                continue
            if component & ending_chapters:
                continue
            has_exit = any(nxt not in component for node_id in component for nxt in adjacency.get(node_id, []))
            if has_exit:
                continue
            members = sorted(component, key=chapter_ids.index)
            trapped.update(members)
            out.append(
                _issue(
                    type="circular_reference",
                    severity="major",
                    location=members[0],
                    message=f"chapters {members} form a loop with no way out",
                    suggestion="Add a choice that leaves the loop toward an ending.",
                )
            )
        return out, trapped

    def _missing_endings(
        self,
        structure: ChoiceStructure,
        chapter_ids: list[str],
        adjacency: dict[str, list[str]],
        ending_chapters: set[str],
        trapped: set[str],
    ) -> list[ValidationIssue]:
        out: list[ValidationIssue] = []
        if not structure.endings:
            out.append(
                _issue(
                    type="missing_ending",
                    severity="critical",
                    location="endings",
                    message="story has no registered ending",
                    suggestion="Register at least one ending chapter.",
                )
            )

        explicit_sources = {connection.from_chapter for connection in structure.path_connections}
        leaves: set[str] = set()
        for chapter_id in chapter_ids:
            if chapter_id in ending_chapters:
                continue
            if not structure.choices_at(chapter_id) and chapter_id not in explicit_sources:
                leaves.add(chapter_id)
                out.append(
                    _issue(
                        type="missing_ending",
                        severity="critical",
                        location=chapter_id,
                        message=f"chapter '{chapter_id}' has no outgoing choice and is not an ending",
                        suggestion="Add a choice point to the chapter or register it as an ending.",
                    )
                )

        reverse: dict[str, list[str]] = {chapter_id: [] for chapter_id in chapter_ids}
        for source, targets in adjacency.items():
            for target in targets:
                reverse.setdefault(target, []).append(source)
        reaches_ending = _reachable(sorted(ending_chapters & set(chapter_ids), key=chapter_ids.index), reverse)
        for chapter_id in chapter_ids:
            if chapter_id in reaches_ending or chapter_id in leaves or chapter_id in trapped:
                continue
            if not structure.endings:
                continue
            out.append(
                _issue(
                    type="missing_ending",
                    severity="major",
                    location=chapter_id,
                    message=f"no route leads from chapter '{chapter_id}' to any ending",
                    suggestion="Route at least one choice from this branch toward an ending.",
                )
            )
        return out

    def _choice_warnings(self, structure: ChoiceStructure) -> list[ValidationWarning]:
        out: list[ValidationWarning] = []
        limit = self.policy["max_choices_per_point"]
        for point in structure.choice_points:
            if len(point.choices) > limit:
                out.append(
                    _warning(
                        type="too_many_choices",
                        location=point.id,
                        message=f"choice point '{point.id}' offers {len(point.choices)} choices (limit {limit})",
                        suggestion=f"Keep choice points at {limit} options or fewer.",
                    )
                )
            seen_text: set[str] = set()
            for choice in point.choices:
                location = f"choice_points[{point.id}].choices[{choice.id}]"
                if point.affects_ending and not choice.consequences:
                    out.append(
                        _warning(
                            type="shallow_consequences",
                            location=location,
                            message=f"choice '{choice.id}' affects the ending but carries no consequence",
                            suggestion="Give ending-relevant choices at least one consequence.",
                        )
                    )
                text = choice.text.strip().casefold()
                if not text:
                    out.append(
                        _warning(
                            type="unclear_choice",
                            location=location,
                            message=f"choice '{choice.id}' has no text",
                            suggestion="Write a short, distinct label for every choice.",
                        )
                    )
                elif text in seen_text:
                    out.append(
                        _warning(
                            type="unclear_choice",
                            location=location,
                            message=f"choice '{choice.id}' repeats the text of another option",
                            suggestion="Write a short, distinct label for every choice.",
                        )
                    )
                seen_text.add(text)
        return out

    def _path_analysis(
        self,
        structure: ChoiceStructure,
        adjacency: dict[str, list[str]],
        ending_chapters: set[str],
        cancel_event: Event | None,
    ) -> tuple[PathAnalysis, list[int]]:
        limit = self.policy["max_enumerated_paths"]
        start = structure.start_chapter_id
        lengths: list[int] = []
        complete_lengths: list[int] = []
        distribution: Counter[str] = Counter()
        truncated = False
        expansions = 0

        stack: list[tuple[str, tuple[str, ...]]] = [(start, (start,))]
        while stack:
            expansions += 1
            if expansions % _CANCEL_CHECK_EVERY == 0:
                self._check_cancel(cancel_event, "path_analysis")
            chapter_id, trail = stack.pop()
            successors = [nxt for nxt in adjacency.get(chapter_id, []) if nxt not in trail]
            if chapter_id in ending_chapters or not successors:
                lengths.append(len(trail) - 1)
                if chapter_id in ending_chapters:
                    complete_lengths.append(len(trail) - 1)
                    for ending in structure.endings_at(chapter_id):
                        distribution[ending.id] += 1
                if len(lengths) >= limit:
                    truncated = bool(stack)
                    break
                continue
            for nxt in reversed(successors):
                stack.append((nxt, trail + (nxt,)))
        self._check_cancel(cancel_event, "path_analysis")

        choice_count = sum(len(point.choices) for point in structure.choice_points)
        point_count = len(structure.choice_points)
        total = len(lengths)
        analysis = PathAnalysis(
            total_paths=total,
            average_path_length=round(sum(lengths) / total, 4) if total else 0.0,
            shortest_path=min(lengths) if lengths else 0,
            longest_path=max(lengths) if lengths else 0,
            ending_distribution={ending_id: distribution[ending_id] for ending_id in sorted(distribution)},
            choice_density=round(choice_count / point_count, 4) if point_count else 0.0,
            replay_value_score=round(len(complete_lengths) / total, 4) if total else 0.0,
            truncated=truncated,
        )
        return analysis, complete_lengths


def validate_structure(
    structure: ChoiceStructure,
    *,
    policy: dict | None = None,
    cancel_event: Event | None = None,
) -> ChoiceValidation:
    return ValidationEngine(policy).validate(structure, cancel_event=cancel_event)
