"""
Proctor Session Engine - FastAPI Application
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.routes.health import router as health_router
from .api.routes.monitor import router as monitor_router
from .api.routes.realtime import router as realtime_router
from .api.routes.sessions import router as sessions_router
from .config import settings
from .services.engine import build_engine
from .utils.logging import setup_logging

setup_logging(
    service_name=settings.SERVICE_ID,
    level=settings.LOG_LEVEL,
    log_to_file=settings.LOG_TO_FILE,
    log_dir=settings.LOG_DIR,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} on port {settings.PORT}...")
    engine = build_engine(settings)
    await engine.start()
    app.state.engine = engine
    logger.info(f"Session store: {settings.SESSION_STORE}, rate limiting: {settings.RATE_LIMIT_ENABLED}")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await engine.close()


app = FastAPI(
    title=settings.APP_NAME,
    description="Live exam sessions, violation tracking and supervisor monitoring",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests with timing."""
    start = time.time()
    path = request.url.path

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"{request.method} {path} failed")
        raise

    if path not in ["/health", "/favicon.ico"]:
        duration_ms = int((time.time() - start) * 1000)
        logger.info(f"{request.method} {path} -> {response.status_code} in {duration_ms}ms")
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using wildcard origin
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(health_router)
app.include_router(monitor_router)
app.include_router(sessions_router)
app.include_router(realtime_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("proctor_engine.main:app", host="0.0.0.0", port=settings.PORT, reload=settings.DEBUG)
