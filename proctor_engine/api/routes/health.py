"""
Health endpoints
"""
from fastapi import APIRouter, Depends

from ... import __version__
from ...config import settings
from ...services.engine import ProctorEngine
from ..deps import get_engine

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(engine: ProctorEngine = Depends(get_engine)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.SERVICE_ID,
        "version": __version__,
        "store": type(engine.store).__name__,
        "onlineSessions": len(engine.registry.list_online()),
        "supervisors": engine.registry.supervisor_count,
    }


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": settings.APP_NAME,
        "websocket": "/ws",
        "docs": "/docs" if settings.DEBUG else "Disabled in production"
    }
