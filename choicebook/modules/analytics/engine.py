from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Event
from typing import Any

from choicebook.config import settings
from choicebook.modules.analytics.errors import AnalysisCancelledError
from choicebook.modules.analytics.schemas import (
    AnalyticsOverview,
    ChoiceAnalytics,
    EndingAnalytics,
    EndingStat,
    PathAnalysisReport,
    PopularPath,
    ReaderBehavior,
)
from choicebook.modules.paths.schemas import ReaderPath, SessionStatus
from choicebook.modules.structure.schemas import ChoiceStructure, DifficultyLevel
from choicebook.utils.time import as_utc

logger = logging.getLogger(__name__)

_FOLLOW_UP_LIMIT = 3


def _safe_float(value: object, default: float) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return float(default)


def _safe_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return int(default)


def normalize_analytics_policy(policy: dict | None) -> dict[str, Any]:
    raw = policy if isinstance(policy, dict) else {}
    hard_time = max(1.0, min(_safe_float(raw.get("hard_decision_time_s"), settings.analytics_hard_decision_time_s), 3600.0))
    moderate_time = max(
        0.0,
        min(_safe_float(raw.get("moderate_decision_time_s"), settings.analytics_moderate_decision_time_s), hard_time),
    )
    hard_rate = max(0.0, min(_safe_float(raw.get("hard_completion_rate"), settings.analytics_hard_completion_rate), 1.0))
    moderate_rate = max(
        hard_rate,
        min(_safe_float(raw.get("moderate_completion_rate"), settings.analytics_moderate_completion_rate), 1.0),
    )
    return {
        "completion_threshold": max(
            0.0, min(_safe_float(raw.get("completion_threshold"), settings.analytics_completion_threshold), 100.0)
        ),
        "hard_decision_time_s": hard_time,
        "moderate_decision_time_s": moderate_time,
        "hard_completion_rate": hard_rate,
        "moderate_completion_rate": moderate_rate,
        "weight_selection": max(0.0, min(_safe_float(raw.get("weight_selection"), settings.analytics_weight_selection), 1.0)),
        "weight_completion": max(
            0.0, min(_safe_float(raw.get("weight_completion"), settings.analytics_weight_completion), 1.0)
        ),
        "weight_satisfaction": max(
            0.0, min(_safe_float(raw.get("weight_satisfaction"), settings.analytics_weight_satisfaction), 1.0)
        ),
        "popular_paths_limit": max(1, min(_safe_int(raw.get("popular_paths_limit"), settings.analytics_popular_paths_limit), 100)),
        "max_workers": max(1, min(_safe_int(raw.get("max_workers"), settings.analytics_max_workers), 32)),
        "chunk_size": max(1, min(_safe_int(raw.get("chunk_size"), settings.analytics_chunk_size), 10_000)),
    }


def classify_difficulty(
    average_decision_time: float,
    completion_rate: float | None,
    policy: dict[str, Any] | None = None,
) -> DifficultyLevel:
    cfg = policy if policy is not None else normalize_analytics_policy(None)
    rate = 1.0 if completion_rate is None else float(completion_rate)
    if average_decision_time > cfg["hard_decision_time_s"] or rate < cfg["hard_completion_rate"]:
        return "hard"
    if average_decision_time > cfg["moderate_decision_time_s"] or rate < cfg["moderate_completion_rate"]:
        return "moderate"
    return "easy"


def engagement_score(
    normalized_selection_rate: float,
    completion_rate: float,
    normalized_satisfaction: float,
    policy: dict[str, Any] | None = None,
) -> float:
    cfg = policy if policy is not None else normalize_analytics_policy(None)
    score = (
        cfg["weight_selection"] * normalized_selection_rate
        + cfg["weight_completion"] * completion_rate
        + cfg["weight_satisfaction"] * normalized_satisfaction
    )
    return max(0.0, min(score, 1.0))


def path_signature(choice_ids: Sequence[str]) -> str:
    return ">".join(choice_ids)


def _path_satisfaction(structure: ChoiceStructure, path: ReaderPath) -> float | None:
    if path.satisfaction_rating is not None:
        return float(path.satisfaction_rating)
    for ending_id in path.discovered_endings:
        ending = structure.ending_by_id(ending_id)
        if ending is not None and ending.satisfaction_rating is not None:
            return float(ending.satisfaction_rating)
    return None


@dataclass(slots=True)
class _ChoiceTally:
    choice_point_id: str
    selection_count: int = 0
    decision_time_total: float = 0.0
    sessions: int = 0
    completed_sessions: int = 0
    ending_sessions: int = 0
    satisfaction_total: float = 0.0
    satisfaction_count: int = 0
    follow_ups: Counter[str] = field(default_factory=Counter)

    def merge(self, other: _ChoiceTally) -> None:
        self.selection_count += other.selection_count
        self.decision_time_total += other.decision_time_total
        self.sessions += other.sessions
        self.completed_sessions += other.completed_sessions
        self.ending_sessions += other.ending_sessions
        self.satisfaction_total += other.satisfaction_total
        self.satisfaction_count += other.satisfaction_count
        self.follow_ups.update(other.follow_ups)


@dataclass(slots=True)
class _PathTally:
    total_paths: int = 0
    total_choices: int = 0
    shortest: int | None = None
    longest: int = 0
    threshold_hits: int = 0
    ending_counts: Counter[str] = field(default_factory=Counter)
    ending_length_total: Counter[str] = field(default_factory=Counter)
    ending_satisfaction_total: dict[str, float] = field(default_factory=dict)
    ending_satisfaction_count: Counter[str] = field(default_factory=Counter)
    point_selections: Counter[str] = field(default_factory=Counter)
    choices: dict[str, _ChoiceTally] = field(default_factory=dict)
    users: set[str] = field(default_factory=set)
    duration_total_s: float = 0.0
    duration_count: int = 0
    abandoned: int = 0
    groups: dict[str, list[float]] = field(default_factory=dict)
    grouped_paths: int = 0

    def merge(self, other: _PathTally) -> None:
        self.total_paths += other.total_paths
        self.total_choices += other.total_choices
        if other.shortest is not None:
            self.shortest = other.shortest if self.shortest is None else min(self.shortest, other.shortest)
        self.longest = max(self.longest, other.longest)
        self.threshold_hits += other.threshold_hits
        self.ending_counts.update(other.ending_counts)
        self.ending_length_total.update(other.ending_length_total)
        for ending_id, total in other.ending_satisfaction_total.items():
            self.ending_satisfaction_total[ending_id] = self.ending_satisfaction_total.get(ending_id, 0.0) + total
        self.ending_satisfaction_count.update(other.ending_satisfaction_count)
        self.point_selections.update(other.point_selections)
        for choice_id, tally in other.choices.items():
            mine = self.choices.get(choice_id)
            if mine is None:
                self.choices[choice_id] = tally
            else:
                mine.merge(tally)
        self.users |= other.users
        self.duration_total_s += other.duration_total_s
        self.duration_count += other.duration_count
        self.abandoned += other.abandoned
        for signature, (count, completion_total) in other.groups.items():
            group = self.groups.setdefault(signature, [0, 0.0])
            group[0] += count
            group[1] += completion_total
        self.grouped_paths += other.grouped_paths


def _tally_chunk(
    structure: ChoiceStructure,
    paths: Sequence[ReaderPath],
    threshold: float,
    cancel_event: Event | None,
) -> _PathTally:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError(stage="analytics")
    tally = _PathTally()
    for path in paths:
        choice_ids = path.selected_choice_ids()
        length = len(choice_ids)
        completed = path.status is SessionStatus.COMPLETED
        satisfaction = _path_satisfaction(structure, path)

        tally.total_paths += 1
        tally.total_choices += length
        tally.shortest = length if tally.shortest is None else min(tally.shortest, length)
        tally.longest = max(tally.longest, length)
        if path.path_completion >= threshold:
            tally.threshold_hits += 1
        tally.users.add(path.user_id)

        if completed:
            for ending_id in path.discovered_endings:
                tally.ending_counts[ending_id] += 1
                tally.ending_length_total[ending_id] += length
                if satisfaction is not None:
                    tally.ending_satisfaction_total[ending_id] = (
                        tally.ending_satisfaction_total.get(ending_id, 0.0) + satisfaction
                    )
                    tally.ending_satisfaction_count[ending_id] += 1

        if path.session_end is not None:
            elapsed = (as_utc(path.session_end) - as_utc(path.session_start)).total_seconds()
            tally.duration_total_s += max(0.0, elapsed)
            tally.duration_count += 1
        elif path.path_completion < threshold:
            tally.abandoned += 1

        for idx, made in enumerate(path.choices_made):
            choice_tally = tally.choices.get(made.choice_id)
            if choice_tally is None:
                point = structure.choice_point_for(made.choice_id)
                choice_tally = _ChoiceTally(choice_point_id=point.id if point else made.choice_point_id)
                tally.choices[made.choice_id] = choice_tally
            tally.point_selections[choice_tally.choice_point_id] += 1
            choice_tally.selection_count += 1
            choice_tally.decision_time_total += float(made.time_taken_seconds)
            if idx + 1 < length:
                choice_tally.follow_ups[choice_ids[idx + 1]] += 1

        for choice_id in dict.fromkeys(choice_ids):
            choice_tally = tally.choices[choice_id]
            choice_tally.sessions += 1
            if completed:
                choice_tally.completed_sessions += 1
            if path.discovered_endings:
                choice_tally.ending_sessions += 1
            if satisfaction is not None:
                choice_tally.satisfaction_total += satisfaction
                choice_tally.satisfaction_count += 1

        if length > 0:
            group = tally.groups.setdefault(path_signature(choice_ids), [0, 0.0])
            group[0] += 1
            group[1] += float(path.path_completion)
            tally.grouped_paths += 1
    return tally


def _ordered_choice_ids(structure: ChoiceStructure, tally: _PathTally) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    seen: set[str] = set()
    for point in structure.choice_points:
        for choice in point.choices:
            if choice.id in seen:
                continue
            seen.add(choice.id)
            out.append((point.id, choice.id))
    for choice_id in sorted(tally.choices):
        if choice_id not in seen:
            out.append((tally.choices[choice_id].choice_point_id, choice_id))
    return out


def _choice_analytics(structure: ChoiceStructure, tally: _PathTally, policy: dict[str, Any]) -> list[ChoiceAnalytics]:
    ordered = _ordered_choice_ids(structure, tally)
    rates: dict[str, float] = {}
    for point_id, choice_id in ordered:
        choice_tally = tally.choices.get(choice_id)
        point_total = tally.point_selections.get(point_id, 0)
        count = choice_tally.selection_count if choice_tally else 0
        rates[choice_id] = count / point_total if point_total else 0.0

    top_rate_by_point: dict[str, float] = {}
    for point_id, choice_id in ordered:
        top_rate_by_point[point_id] = max(top_rate_by_point.get(point_id, 0.0), rates[choice_id])

    out: list[ChoiceAnalytics] = []
    for point_id, choice_id in ordered:
        choice_tally = tally.choices.get(choice_id) or _ChoiceTally(choice_point_id=point_id)
        count = choice_tally.selection_count
        average_time = choice_tally.decision_time_total / count if count else 0.0
        completion_rate = choice_tally.completed_sessions / choice_tally.sessions if choice_tally.sessions else None
        satisfaction = (
            choice_tally.satisfaction_total / choice_tally.satisfaction_count if choice_tally.satisfaction_count else None
        )
        top_rate = top_rate_by_point.get(point_id, 0.0)
        normalized_selection = rates[choice_id] / top_rate if top_rate > 0 else 0.0
        follow_ups = sorted(choice_tally.follow_ups.items(), key=lambda item: (-item[1], item[0]))
        out.append(
            ChoiceAnalytics(
                choice_point_id=point_id,
                choice_id=choice_id,
                selection_count=count,
                selection_rate=round(rates[choice_id], 4),
                average_decision_time=round(average_time, 4),
                completion_rate=round(completion_rate or 0.0, 4),
                satisfaction_rating=round(satisfaction, 4) if satisfaction is not None else None,
                difficulty=classify_difficulty(average_time, completion_rate, policy),
                engagement_score=round(
                    engagement_score(
                        normalized_selection,
                        completion_rate or 0.0,
                        (satisfaction or 0.0) / 5.0,
                        policy,
                    ),
                    4,
                ),
                leads_to_ending_count=choice_tally.ending_sessions,
                popular_follow_up_choices=[choice for choice, _ in follow_ups[:_FOLLOW_UP_LIMIT]],
            )
        )
    return out


def _popular_paths(tally: _PathTally, limit: int) -> list[PopularPath]:
    ranked = sorted(tally.groups.items(), key=lambda item: (-item[1][0], item[0]))
    out: list[PopularPath] = []
    for signature, (count, completion_total) in ranked[:limit]:
        out.append(
            PopularPath(
                signature=signature,
                choice_sequence=signature.split(">"),
                reader_count=int(count),
                average_completion=round(completion_total / count, 4),
                popularity_score=round(count / tally.grouped_paths, 4) if tally.grouped_paths else 0.0,
            )
        )
    return out


def _ending_analytics(structure: ChoiceStructure, tally: _PathTally) -> EndingAnalytics:
    distribution = {ending_id: tally.ending_counts[ending_id] for ending_id in sorted(tally.ending_counts)}
    ranked = sorted(distribution.items(), key=lambda item: (-item[1], item[0]))

    stats: list[EndingStat] = []
    known_ids = [ending.id for ending in structure.endings]
    for ending_id in known_ids + [item for item in distribution if item not in known_ids]:
        ending = structure.ending_by_id(ending_id)
        count = distribution.get(ending_id, 0)
        satisfaction_count = tally.ending_satisfaction_count.get(ending_id, 0)
        stats.append(
            EndingStat(
                ending_id=ending_id,
                ending_type=ending.ending_type if ending else "unknown",
                rarity=ending.rarity if ending else "unknown",
                completion_count=count,
                discovery_rate=round(count / tally.total_paths, 4) if tally.total_paths else 0.0,
                average_path_length=round(tally.ending_length_total.get(ending_id, 0) / count, 4) if count else 0.0,
                average_satisfaction=(
                    round(tally.ending_satisfaction_total[ending_id] / satisfaction_count, 4)
                    if satisfaction_count
                    else None
                ),
            )
        )

    return EndingAnalytics(
        distribution=distribution,
        total_endings=len(distribution),
        most_popular=ranked[0] if ranked else None,
        endings=stats,
        undiscovered_endings=[ending_id for ending_id in known_ids if ending_id not in distribution],
    )


def _build_report(structure: ChoiceStructure, tally: _PathTally, policy: dict[str, Any]) -> PathAnalysisReport:
    total = tally.total_paths
    average_length = tally.total_choices / total if total else 0.0
    replay_value = tally.threshold_hits / total if total else 0.0
    unique_readers = len(tally.users)
    replay_rate = (total - unique_readers) / unique_readers if unique_readers > 0 else 0.0
    average_minutes = tally.duration_total_s / tally.duration_count / 60.0 if tally.duration_count else 0.0

    behavior = ReaderBehavior(
        unique_readers=unique_readers,
        total_sessions=total,
        replay_rate=round(replay_rate, 4),
        average_session_length=round(average_minutes, 4),
        abandonment_rate=round(tally.abandoned / total, 4) if total else 0.0,
    )
    endings = _ending_analytics(structure, tally)
    return PathAnalysisReport(
        story_id=structure.story_id,
        structure_version=structure.version,
        total_paths=total,
        average_path_length=round(average_length, 4),
        shortest_path=tally.shortest or 0,
        longest_path=tally.longest,
        ending_distribution=dict(endings.distribution),
        choice_density=round(average_length, 4),
        replay_value_score=round(replay_value, 4),
        choice_analytics=_choice_analytics(structure, tally, policy),
        popular_paths=_popular_paths(tally, policy["popular_paths_limit"]),
        reader_behavior=behavior,
        ending_analytics=endings,
        overview=AnalyticsOverview(
            total_readers=unique_readers,
            total_choices_made=tally.total_choices,
            average_path_length=round(average_length, 4),
            completion_rate=round(replay_value, 4),
            average_playtime_minutes=round(average_minutes, 4),
            replay_rate=round(replay_rate, 4),
        ),
    )


class PathAnalyticsEngine:
    """Pure aggregation of reader paths into a PathAnalysisReport.

    Paths are tallied in fixed-size chunks (optionally on a thread pool) and
    merged in chunk order, so the report only depends on its inputs.
    """

    def __init__(self, policy: dict | None = None) -> None:
        self.policy = normalize_analytics_policy(policy)

    def analyze(
        self,
        structure: ChoiceStructure,
        paths: Sequence[ReaderPath],
        *,
        cancel_event: Event | None = None,
    ) -> PathAnalysisReport:
        ordered = sorted(paths, key=lambda item: (as_utc(item.session_start), item.session_id))
        size = self.policy["chunk_size"]
        chunks = [ordered[idx : idx + size] for idx in range(0, len(ordered), size)]
        threshold = self.policy["completion_threshold"]

        merged = _PathTally()
        processed = 0
        workers = self.policy["max_workers"]
        if workers > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(_tally_chunk, structure, chunk, threshold, cancel_event) for chunk in chunks]
                try:
                    for future, chunk in zip(futures, chunks):
                        self._check_cancel(cancel_event, processed)
                        merged.merge(future.result())
                        processed += len(chunk)
                except AnalysisCancelledError:
                    for future in futures:
                        future.cancel()
                    logger.info("analytics cancelled story=%s processed=%s", structure.story_id, processed)
                    raise AnalysisCancelledError(stage="analytics", processed=processed) from None
        else:
            try:
                for chunk in chunks:
                    self._check_cancel(cancel_event, processed)
                    merged.merge(_tally_chunk(structure, chunk, threshold, None))
                    processed += len(chunk)
            except AnalysisCancelledError:
                logger.info("analytics cancelled story=%s processed=%s", structure.story_id, processed)
                raise

        self._check_cancel(cancel_event, processed)
        return _build_report(structure, merged, self.policy)

    @staticmethod
    def _check_cancel(cancel_event: Event | None, processed: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelledError(stage="analytics", processed=processed)


def analyze_paths(
    structure: ChoiceStructure,
    paths: Sequence[ReaderPath],
    *,
    policy: dict | None = None,
    cancel_event: Event | None = None,
) -> PathAnalysisReport:
    return PathAnalyticsEngine(policy).analyze(structure, paths, cancel_event=cancel_event)


def selection_counts_from_events(events: Iterable[Any]) -> dict[str, dict[str, int]]:
    """Per choice point, per choice selection counts rebuilt from the append-only event log."""
    counts: dict[str, Counter[str]] = {}
    for event in events:
        if isinstance(event, dict):
            point_id, choice_id = event.get("choice_point_id"), event.get("choice_id")
        else:
            point_id, choice_id = getattr(event, "choice_point_id", None), getattr(event, "choice_id", None)
        if not point_id or not choice_id:
            continue
        counts.setdefault(str(point_id), Counter())[str(choice_id)] += 1
    return {
        point_id: {choice_id: counts[point_id][choice_id] for choice_id in sorted(counts[point_id])}
        for point_id in sorted(counts)
    }
