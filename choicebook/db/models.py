import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from choicebook.db.base import Base
from choicebook.db.types import GUID, JSONType
from choicebook.utils.time import utc_now_naive


class ChoiceStructureRecord(Base):
    __tablename__ = "choice_structures"
    __table_args__ = (
        UniqueConstraint("story_id", "version", name="uq_choice_structures_story_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[str] = mapped_column(String(128), index=True)
    version: Mapped[int] = mapped_column(Integer, index=True)
    structure_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    checksum: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class ReaderPathRecord(Base):
    __tablename__ = "reader_paths"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    story_id: Mapped[str] = mapped_column(String(128), index=True)
    session_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(32), default="active", index=True)
    path_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    path_completion: Mapped[float] = mapped_column(Float, default=0.0)
    playthrough_count: Mapped[int] = mapped_column(Integer, default=1)
    session_start: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    session_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive, index=True)


class ChoiceEventRecord(Base):
    __tablename__ = "choice_events"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[str] = mapped_column(String(128), index=True)
    choice_point_id: Mapped[str] = mapped_column(String(128))
    choice_id: Mapped[str] = mapped_column(String(128))
    session_id: Mapped[str] = mapped_column(String(128), index=True)
    time_taken_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class AnalyticsSnapshotRecord(Base):
    __tablename__ = "analytics_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    story_id: Mapped[str] = mapped_column(String(128), index=True)
    report_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


Index(
    "ix_choice_events_story_point_choice",
    ChoiceEventRecord.story_id,
    ChoiceEventRecord.choice_point_id,
    ChoiceEventRecord.choice_id,
)
