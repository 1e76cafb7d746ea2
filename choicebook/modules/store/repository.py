from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from choicebook.db.models import AnalyticsSnapshotRecord, ChoiceEventRecord, ChoiceStructureRecord, ReaderPathRecord
from choicebook.modules.analytics.engine import selection_counts_from_events
from choicebook.modules.analytics.schemas import PathAnalysisReport
from choicebook.modules.paths.schemas import ChoiceMade, ReaderPath
from choicebook.modules.structure.schemas import ChoiceStructure
from choicebook.utils.time import as_utc, utc_now_naive


def _naive(value: datetime | None) -> datetime | None:
    value = as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def save_choice_structure(db: Session, structure: ChoiceStructure) -> ChoiceStructureRecord:
    row = db.execute(
        select(ChoiceStructureRecord).where(
            ChoiceStructureRecord.story_id == structure.story_id,
            ChoiceStructureRecord.version == structure.version,
        )
    ).scalar_one_or_none()
    payload = structure.model_dump(mode="json")
    checksum = structure.checksum()
    if row is None:
        row = ChoiceStructureRecord(
            story_id=structure.story_id,
            version=structure.version,
            structure_json=payload,
            checksum=checksum,
        )
        db.add(row)
    else:
        row.structure_json = payload
        row.checksum = checksum
    db.flush()
    return row


def get_choice_structure(db: Session, story_id: str, version: int | None = None) -> ChoiceStructure | None:
    stmt = select(ChoiceStructureRecord).where(ChoiceStructureRecord.story_id == story_id)
    if version is not None:
        stmt = stmt.where(ChoiceStructureRecord.version == int(version))
    row = db.execute(stmt.order_by(ChoiceStructureRecord.version.desc())).scalars().first()
    if row is None:
        return None
    return ChoiceStructure.model_validate(row.structure_json)


def latest_structure_version(db: Session, story_id: str) -> int:
    row = db.execute(
        select(ChoiceStructureRecord.version)
        .where(ChoiceStructureRecord.story_id == story_id)
        .order_by(ChoiceStructureRecord.version.desc())
    ).scalars().first()
    return int(row) if row is not None else 0


def save_reader_path(db: Session, path: ReaderPath) -> ReaderPathRecord:
    row = db.execute(
        select(ReaderPathRecord).where(ReaderPathRecord.session_id == path.session_id)
    ).scalar_one_or_none()
    if row is None:
        row = ReaderPathRecord(session_id=path.session_id)
        db.add(row)
    row.user_id = path.user_id
    row.story_id = path.story_id
    row.status = path.status.value
    row.path_json = path.model_dump(mode="json")
    row.path_completion = float(path.path_completion)
    row.playthrough_count = int(path.playthrough_count)
    row.session_start = _naive(path.session_start)
    row.session_end = _naive(path.session_end)
    row.updated_at = utc_now_naive()
    db.flush()
    return row


def get_reader_path(db: Session, session_id: str) -> ReaderPath | None:
    row = db.execute(
        select(ReaderPathRecord).where(ReaderPathRecord.session_id == session_id)
    ).scalar_one_or_none()
    if row is None:
        return None
    return ReaderPath.model_validate(row.path_json)


def list_reader_paths(db: Session, story_id: str) -> list[ReaderPath]:
    rows = db.execute(
        select(ReaderPathRecord)
        .where(ReaderPathRecord.story_id == story_id)
        .order_by(ReaderPathRecord.session_start.asc(), ReaderPathRecord.session_id.asc())
    ).scalars().all()
    return [ReaderPath.model_validate(row.path_json) for row in rows]


def append_choice_event(db: Session, *, story_id: str, session_id: str, choice: ChoiceMade) -> ChoiceEventRecord:
    row = ChoiceEventRecord(
        story_id=story_id,
        choice_point_id=choice.choice_point_id,
        choice_id=choice.choice_id,
        session_id=session_id,
        time_taken_seconds=float(choice.time_taken_seconds),
        created_at=_naive(choice.timestamp),
    )
    db.add(row)
    db.flush()
    return row


def selection_counts(db: Session, story_id: str) -> dict[str, dict[str, int]]:
    rows = db.execute(
        select(ChoiceEventRecord)
        .where(ChoiceEventRecord.story_id == story_id)
        .order_by(ChoiceEventRecord.created_at.asc())
    ).scalars().all()
    return selection_counts_from_events(rows)


def save_analytics_snapshot(db: Session, report: PathAnalysisReport) -> AnalyticsSnapshotRecord:
    row = AnalyticsSnapshotRecord(story_id=report.story_id, report_json=report.model_dump(mode="json"))
    db.add(row)
    db.flush()
    return row


def latest_analytics_snapshot(db: Session, story_id: str) -> PathAnalysisReport | None:
    row = db.execute(
        select(AnalyticsSnapshotRecord)
        .where(AnalyticsSnapshotRecord.story_id == story_id)
        .order_by(AnalyticsSnapshotRecord.created_at.desc())
    ).scalars().first()
    if row is None:
        return None
    return PathAnalysisReport.model_validate(row.report_json)
