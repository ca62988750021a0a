"""
Pytest Configuration for Proctor Engine Tests
"""
import os

# Settings are read at import time
os.environ["SESSION_STORE"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"
os.environ["JWT_SECRET"] = "test-secret-key-for-proctor-engine-tests"

from typing import List, Optional

import pytest
import pytest_asyncio

from proctor_engine.services.connection_registry import ConnectionHandle
from proctor_engine.services.engine import ProctorEngine
from proctor_engine.services.identity import Principal
from proctor_engine.services.session_store import InMemorySessionStore


def make_principal(
    user_id: str = "student-1",
    role: str = "student",
    session_id: Optional[str] = None,
    name: Optional[str] = "Test Student",
    student_id: Optional[str] = "S001"
) -> Principal:
    return Principal(user_id=user_id, role=role, session_id=session_id, name=name, student_id=student_id)


def drain(handle: ConnectionHandle) -> List[dict]:
    """Pop every queued frame from a handle's outbox"""
    frames = []
    while not handle.outbox.empty():
        frame = handle.outbox.get_nowait()
        if frame is not None:
            frames.append(frame)
    return frames


def event_names(frames: List[dict]) -> List[str]:
    return [frame["event"] for frame in frames]


@pytest.fixture
def supervisor_principal():
    return make_principal(user_id="admin-1", role="admin", name="Proctor", student_id=None)


@pytest_asyncio.fixture
async def store():
    """In-memory session store"""
    return InMemorySessionStore()


@pytest_asyncio.fixture
async def engine():
    """Engine over an in-memory store, no rate limiting"""
    engine = ProctorEngine(InMemorySessionStore())
    await engine.start()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def session(engine):
    """An ACTIVE session with max_violations=3"""
    return await engine.open_session("student-1", "exam-1", max_violations=3, duration_seconds=3600)


@pytest_asyncio.fixture
async def supervisor(engine, supervisor_principal):
    """A connected supervisor handle"""
    return await engine.connect(supervisor_principal)


@pytest_asyncio.fixture
async def student(engine, session):
    """A connected student handle bound to `session`"""
    handle = await engine.connect(make_principal(session_id=session.id))
    return handle
