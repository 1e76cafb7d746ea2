from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from choicebook.db.session import get_db
from choicebook.modules.analytics.errors import AnalysisCancelledError
from choicebook.modules.analytics.schemas import PathAnalysisReport
from choicebook.modules.generation.errors import ContentGeneratorError
from choicebook.modules.generation.schemas import NarrationResult
from choicebook.modules.paths.errors import (
    InvalidChoiceError,
    PathError,
    SessionNotFoundError,
    UnknownStoryError,
)
from choicebook.modules.paths.schemas import ReaderPath
from choicebook.modules.runtime import telemetry
from choicebook.modules.runtime.schemas import (
    AcknowledgeOut,
    AcknowledgeRequest,
    ChoiceOut,
    ChoiceRequest,
    ConsequencesOut,
    EndingNarrationOut,
    NarrationRequest,
    RatingRequest,
    SessionCreateRequest,
    StructurePublishOut,
    SweepOut,
    ValidateRequest,
)
from choicebook.modules.runtime.service import get_runtime
from choicebook.modules.structure.errors import StructureError
from choicebook.modules.validation.schemas import ChoiceValidation

router = APIRouter(prefix="/api/v1", tags=["choicebook"])


def _path_http_error(exc: PathError) -> HTTPException:
    if isinstance(exc, (SessionNotFoundError, UnknownStoryError)):
        return HTTPException(status_code=404, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, InvalidChoiceError):
        return HTTPException(
            status_code=422,
            detail={"code": exc.code, "reason": exc.reason, "message": exc.message},
        )
    return HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message})


def _generator_http_error(exc: ContentGeneratorError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"code": exc.code, "message": exc.message, "retryable": exc.retryable},
    )


def _payload_http_error(exc: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"code": "INVALID_STRUCTURE_PAYLOAD", "message": f"{exc.error_count()} validation error(s)"},
    )


@router.post("/stories/{story_id}/structure", response_model=StructurePublishOut, status_code=201)
def publish_structure(
    story_id: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
) -> StructurePublishOut:
    document = dict(payload)
    document["story_id"] = story_id
    try:
        with db.begin():
            structure = get_runtime().publish_structure(db, document)
    except StructureError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": exc.code, "message": exc.message, "location": exc.location},
        ) from exc
    except ValidationError as exc:
        raise _payload_http_error(exc) from exc
    return StructurePublishOut(
        story_id=structure.story_id,
        version=structure.version,
        checksum=structure.checksum(),
        start_chapter_id=structure.start_chapter_id,
        chapter_count=len(structure.chapter_ids()),
        ending_count=len(structure.endings),
    )


@router.post("/stories/validate", response_model=ChoiceValidation)
def validate_story(payload: ValidateRequest) -> ChoiceValidation:
    try:
        return get_runtime().validate_draft(payload.structure, policy=payload.policy)
    except ValidationError as exc:
        raise _payload_http_error(exc) from exc
    except AnalysisCancelledError as exc:
        raise HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message}) from exc


@router.get("/stories/{story_id}/analytics", response_model=PathAnalysisReport)
def story_analytics(
    story_id: str,
    db: Session = Depends(get_db),
) -> PathAnalysisReport:
    try:
        with db.begin():
            return get_runtime().analyze_story(db, story_id)
    except PathError as exc:
        raise _path_http_error(exc) from exc
    except AnalysisCancelledError as exc:
        raise HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message}) from exc


@router.post("/sessions", response_model=ReaderPath, status_code=201)
def create_session(
    payload: SessionCreateRequest,
    db: Session = Depends(get_db),
) -> ReaderPath:
    try:
        with db.begin():
            return get_runtime().open_session(
                db,
                user_id=payload.user_id,
                story_id=payload.story_id,
                session_id=payload.session_id,
                playthrough_count=payload.playthrough_count,
            )
    except PathError as exc:
        raise _path_http_error(exc) from exc


@router.post("/sessions/sweep", response_model=SweepOut)
def sweep_sessions(db: Session = Depends(get_db)) -> SweepOut:
    with db.begin():
        swept = get_runtime().sweep_idle(db)
    return SweepOut(abandoned=len(swept), session_ids=[path.session_id for path in swept])


@router.get("/sessions/{session_id}", response_model=ReaderPath)
def get_session(
    session_id: str,
    db: Session = Depends(get_db),
) -> ReaderPath:
    try:
        return get_runtime().get_path(db, session_id)
    except PathError as exc:
        raise _path_http_error(exc) from exc


@router.post("/sessions/{session_id}/choices", response_model=ChoiceOut)
def make_choice(
    session_id: str,
    payload: ChoiceRequest,
    db: Session = Depends(get_db),
) -> ChoiceOut:
    try:
        with db.begin():
            result = get_runtime().record_choice(
                db,
                session_id=session_id,
                choice_id=payload.choice_id,
                time_taken_seconds=payload.time_taken_seconds,
                user_id=payload.user_id,
                story_id=payload.story_id,
            )
    except PathError as exc:
        raise _path_http_error(exc) from exc
    return ChoiceOut(**result.model_dump())


@router.post("/sessions/{session_id}/end", response_model=ReaderPath)
def end_session(
    session_id: str,
    db: Session = Depends(get_db),
) -> ReaderPath:
    try:
        with db.begin():
            return get_runtime().end_session(db, session_id)
    except PathError as exc:
        raise _path_http_error(exc) from exc


@router.post("/sessions/{session_id}/rating", response_model=ReaderPath)
def rate_session(
    session_id: str,
    payload: RatingRequest,
    db: Session = Depends(get_db),
) -> ReaderPath:
    try:
        with db.begin():
            return get_runtime().rate_session(db, session_id, payload.rating)
    except PathError as exc:
        raise _path_http_error(exc) from exc


@router.get("/sessions/{session_id}/consequences", response_model=ConsequencesOut)
def session_consequences(
    session_id: str,
    db: Session = Depends(get_db),
) -> ConsequencesOut:
    try:
        resolutions, stats = get_runtime().consequences_for(db, session_id)
    except PathError as exc:
        raise _path_http_error(exc) from exc
    return ConsequencesOut(session_id=session_id, resolutions=resolutions, stats=stats)


@router.post("/sessions/{session_id}/consequences/ack", response_model=AcknowledgeOut)
def acknowledge_consequences(
    session_id: str,
    payload: AcknowledgeRequest,
    db: Session = Depends(get_db),
) -> AcknowledgeOut:
    try:
        count = get_runtime().acknowledge(db, session_id, payload.resolution_ids)
    except PathError as exc:
        raise _path_http_error(exc) from exc
    return AcknowledgeOut(session_id=session_id, acknowledged=count)


@router.post("/sessions/{session_id}/narration", response_model=NarrationResult)
async def narrate_next_chapter(
    session_id: str,
    payload: NarrationRequest | None = None,
    db: Session = Depends(get_db),
) -> NarrationResult:
    request = payload or NarrationRequest()
    try:
        with db.begin():
            return await get_runtime().prepare_next_chapter(
                db,
                session_id,
                choice_count=request.choice_count,
                branching_strategy=request.branching_strategy,
            )
    except PathError as exc:
        raise _path_http_error(exc) from exc
    except ContentGeneratorError as exc:
        raise _generator_http_error(exc) from exc


@router.post("/sessions/{session_id}/ending", response_model=EndingNarrationOut)
async def narrate_ending(
    session_id: str,
    db: Session = Depends(get_db),
) -> EndingNarrationOut:
    runtime = get_runtime()
    try:
        content = await runtime.prepare_ending(db, session_id)
        path = runtime.get_path(db, session_id)
    except PathError as exc:
        raise _path_http_error(exc) from exc
    except ContentGeneratorError as exc:
        raise _generator_http_error(exc) from exc
    return EndingNarrationOut(session_id=session_id, ending_id=path.discovered_endings[-1], content=content)


@router.get("/telemetry/runtime")
def runtime_telemetry() -> dict:
    return telemetry.get_runtime_telemetry_summary()
