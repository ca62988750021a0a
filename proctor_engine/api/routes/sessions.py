"""
Session boundary API - submission, expiry and bulk autosave

Endpoints:
- POST /api/sessions/{session_id}/submit - Submit (owner or supervisor)
- POST /api/sessions/{session_id}/expire - Expire when time runs out (supervisor)
- POST /api/sessions/{session_id}/answers/bulk - Save several answers (owner)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...models.events import IdStr
from ...models.session import SessionRecord, SubmissionType, to_ms
from ...services.engine import ProctorEngine
from ...services.errors import SessionNotActive, SessionNotFound, StoreUnavailable
from ...services.identity import Principal
from ..deps import get_engine, get_principal, require_supervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


# ============================================================================
# Request Schemas
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitRequest(CamelModel):
    """Request to submit a session"""
    submission_type: SubmissionType = SubmissionType.MANUAL


class AnswerItem(CamelModel):
    question_id: IdStr = Field(..., min_length=1, max_length=64)
    selected_answer: Optional[str] = None


class BulkAnswersRequest(CamelModel):
    """Answers saved together, e.g. on reconnect"""
    answers: List[AnswerItem] = Field(..., max_length=500)


# ============================================================================
# Helpers
# ============================================================================

async def _load_session(engine: ProctorEngine, session_id: str) -> SessionRecord:
    try:
        record = await engine.store.get_session(session_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return record


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/{session_id}/submit")
async def submit_session(
    session_id: str,
    request: Optional[SubmitRequest] = None,
    engine: ProctorEngine = Depends(get_engine),
    principal: Principal = Depends(get_principal)
):
    """
    Submit a session.

    Students submit their own session; supervisors may submit any.
    Returns 409 when the session is already SUBMITTED, DISQUALIFIED or EXPIRED.
    """
    record = await _load_session(engine, session_id)
    if record.user_id != principal.user_id and not principal.is_supervisor:
        raise HTTPException(status_code=403, detail="Not your session")

    submission_type = request.submission_type if request else SubmissionType.MANUAL
    try:
        updated = await engine.disqualification.submit(session_id, submission_type)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    if updated is None:
        current = await _load_session(engine, session_id)
        raise HTTPException(status_code=409, detail=f"Session is already {current.status.value}")

    logger.info(f"[SUBMIT] {session_id} submitted ({submission_type.value}) by {principal.user_id}")
    return {"success": True, "session": updated.to_dict()}


@router.post("/{session_id}/expire")
async def expire_session(
    session_id: str,
    engine: ProctorEngine = Depends(get_engine),
    principal: Principal = Depends(require_supervisor)
):
    await _load_session(engine, session_id)
    try:
        updated = await engine.disqualification.expire(session_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    if updated is None:
        current = await _load_session(engine, session_id)
        raise HTTPException(status_code=409, detail=f"Session is already {current.status.value}")
    return {"success": True, "session": updated.to_dict()}


@router.post("/{session_id}/answers/bulk")
async def save_answers_bulk(
    session_id: str,
    request: BulkAnswersRequest,
    engine: ProctorEngine = Depends(get_engine),
    principal: Principal = Depends(get_principal)
):
    """Save several answers at once; only while the session is ACTIVE."""
    record = await _load_session(engine, session_id)
    if record.user_id != principal.user_id:
        raise HTTPException(status_code=403, detail="Not your session")

    try:
        saved = await engine.autosave.save_answers(
            session_id,
            [(item.question_id, item.selected_answer) for item in request.answers]
        )
    except SessionNotActive as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": True,
        "saved": len(saved),
        "answers": [
            {"questionId": a.question_id, "selectedAnswer": a.selected_answer, "savedAt": to_ms(a.saved_at)}
            for a in saved
        ],
    }
