"""
Tests for the SQLAlchemy Session Store (SQLite through aiosqlite)
"""
import asyncio

import pytest
import pytest_asyncio

from proctor_engine.models.session import SessionStatus, SubmissionType
from proctor_engine.services.errors import SessionNotActive, SessionNotFound
from proctor_engine.services.sql_store import SqlSessionStore


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    store = SqlSessionStore(f"sqlite+aiosqlite:///{tmp_path}/proctor.db")
    await store.start()
    yield store
    await store.close()


class TestSqlSessions:

    @pytest.mark.asyncio
    async def test_open_and_get(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600, client_address="10.0.0.5")

        loaded = await sql_store.get_session(record.id)

        assert loaded.user_id == "u1"
        assert loaded.status == SessionStatus.ACTIVE
        assert loaded.client_address == "10.0.0.5"
        assert loaded.time_remaining_seconds == 600

    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, sql_store):
        first = await sql_store.open_session("u1", "e1", 3, 600)
        second = await sql_store.open_session("u1", "e1", 3, 600)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_explicit_session_id(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600, session_id="sess-42")

        assert record.id == "sess-42"
        assert (await sql_store.get_session("sess-42")) is not None

    @pytest.mark.asyncio
    async def test_get_unknown(self, sql_store):
        assert await sql_store.get_session("missing") is None


class TestSqlViolations:

    @pytest.mark.asyncio
    async def test_increment_and_append(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)

        first = await sql_store.record_violation(record.id, "TAB_SWITCH", "left", {"url": "x"})
        second = await sql_store.record_violation(record.id, "COPY_PASTE")

        assert (first.violation_count, second.violation_count) == (1, 2)
        assert second.max_violations == 3
        violations = await sql_store.list_violations(record.id)
        assert [v.event_type for v in violations] == ["TAB_SWITCH", "COPY_PASTE"]
        assert violations[0].metadata == {"url": "x"}

    @pytest.mark.asyncio
    async def test_terminal_rejects_and_records_nothing(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)
        await sql_store.transition_status(record.id, SessionStatus.DISQUALIFIED, {SessionStatus.ACTIVE})

        with pytest.raises(SessionNotActive):
            await sql_store.record_violation(record.id, "TAB_SWITCH")

        assert await sql_store.list_violations(record.id) == []
        assert (await sql_store.get_session(record.id)).violation_count == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, sql_store):
        with pytest.raises(SessionNotFound):
            await sql_store.record_violation("missing", "TAB_SWITCH")


class TestSqlTransitions:

    @pytest.mark.asyncio
    async def test_cas_applies_once(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)

        applied = await sql_store.transition_status(
            record.id, SessionStatus.DISQUALIFIED, {SessionStatus.ACTIVE, SessionStatus.DISCONNECTED}
        )
        again = await sql_store.transition_status(
            record.id, SessionStatus.DISQUALIFIED, {SessionStatus.ACTIVE, SessionStatus.DISCONNECTED}
        )

        assert applied[0] == SessionStatus.ACTIVE
        assert applied[1].status == SessionStatus.DISQUALIFIED
        assert applied[1].end_time is not None
        assert again is None

    @pytest.mark.asyncio
    async def test_submission_type_is_stamped(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)

        _, updated = await sql_store.transition_status(
            record.id, SessionStatus.SUBMITTED, {SessionStatus.ACTIVE},
            submission_type=SubmissionType.FORCE_SUBMIT
        )

        assert updated.submission_type == SubmissionType.FORCE_SUBMIT

    @pytest.mark.asyncio
    async def test_live_sessions_exclude_terminal(self, sql_store):
        live = await sql_store.open_session("u1", "e1", 3, 600)
        done = await sql_store.open_session("u2", "e1", 3, 600)
        await sql_store.transition_status(done.id, SessionStatus.EXPIRED, {SessionStatus.ACTIVE})

        sessions = await sql_store.list_live_sessions("e1")

        assert [s.id for s in sessions] == [live.id]

    @pytest.mark.asyncio
    async def test_time_remaining(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)
        await sql_store.transition_status(record.id, SessionStatus.DISCONNECTED, {SessionStatus.ACTIVE})

        updated = await sql_store.update_time_remaining(record.id, 300)

        assert updated.time_remaining_seconds == 300
        assert updated.status == SessionStatus.DISCONNECTED


class TestSqlAnswers:

    @pytest.mark.asyncio
    async def test_upsert_last_write_wins(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)

        await sql_store.upsert_answer(record.id, "q1", "A")
        saved = await sql_store.upsert_answer(record.id, "q1", "D")

        assert saved.selected_answer == "D"
        answers = await sql_store.get_answers(record.id)
        assert [(a.question_id, a.selected_answer) for a in answers] == [("q1", "D")]

    @pytest.mark.asyncio
    async def test_identical_replay_keeps_saved_at(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)

        first = await sql_store.upsert_answer(record.id, "q1", "B")
        await asyncio.sleep(0.01)
        replay = await sql_store.upsert_answer(record.id, "q1", "B")

        assert replay.saved_at == first.saved_at

    @pytest.mark.asyncio
    async def test_answer_requires_active(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)
        await sql_store.transition_status(record.id, SessionStatus.SUBMITTED, {SessionStatus.ACTIVE})

        with pytest.raises(SessionNotActive):
            await sql_store.upsert_answer(record.id, "q1", "A")


class TestSqlConcurrency:
    """Concurrent writers against the database-backed store"""

    @pytest.mark.asyncio
    async def test_concurrent_opens_share_one_live_session(self, sql_store):
        records = await asyncio.gather(*[
            sql_store.open_session("u1", "e1", 3, 600) for _ in range(5)
        ])

        assert len({record.id for record in records}) == 1
        assert len(await sql_store.list_live_sessions("e1")) == 1

    @pytest.mark.asyncio
    async def test_new_session_allowed_after_terminal(self, sql_store):
        first = await sql_store.open_session("u1", "e1", 3, 600)
        await sql_store.transition_status(first.id, SessionStatus.SUBMITTED, {SessionStatus.ACTIVE})

        second = await sql_store.open_session("u1", "e1", 3, 600)

        assert second.id != first.id
        assert second.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_concurrent_violations_are_not_lost(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 100, 600)

        results = await asyncio.gather(*[
            sql_store.record_violation(record.id, "TAB_SWITCH") for _ in range(10)
        ])

        assert sorted(r.violation_count for r in results) == list(range(1, 11))
        assert (await sql_store.get_session(record.id)).violation_count == 10
        assert len(await sql_store.list_violations(record.id)) == 10

    @pytest.mark.asyncio
    async def test_concurrent_disqualify_applies_once(self, sql_store):
        record = await sql_store.open_session("u1", "e1", 3, 600)
        live = {SessionStatus.ACTIVE, SessionStatus.DISCONNECTED}

        results = await asyncio.gather(*[
            sql_store.transition_status(record.id, SessionStatus.DISQUALIFIED, live) for _ in range(5)
        ])

        applied = [r for r in results if r is not None]
        assert len(applied) == 1
        assert applied[0][1].status == SessionStatus.DISQUALIFIED
