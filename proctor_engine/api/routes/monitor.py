"""
Live Monitor API - supervisor read views

Endpoints:
- GET /api/monitor/live?exam_id= - Non-terminal sessions with online flag
- GET /api/monitor/sessions/{session_id} - One session with its violation ledger
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...services.engine import ProctorEngine
from ...services.errors import SessionNotFound, StoreUnavailable
from ...services.identity import Principal
from ..deps import get_engine, require_supervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitor", tags=["Monitor"])


@router.get("/live")
async def live_sessions(
    exam_id: Optional[str] = Query(None),
    engine: ProctorEngine = Depends(get_engine),
    principal: Principal = Depends(require_supervisor)
):
    """Sessions that are ACTIVE or DISCONNECTED, newest first."""
    try:
        sessions = await engine.live_sessions(exam_id)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"sessions": sessions, "total": len(sessions)}


@router.get("/sessions/{session_id}")
async def session_detail(
    session_id: str,
    engine: ProctorEngine = Depends(get_engine),
    principal: Principal = Depends(require_supervisor)
):
    try:
        return await engine.session_detail(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
