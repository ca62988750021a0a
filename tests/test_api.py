"""
Tests for the HTTP and WebSocket surface (FastAPI TestClient)
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from proctor_engine.main import app
from proctor_engine.models.session import SessionStatus
from proctor_engine.services.identity import create_access_token


@pytest.fixture
def client():
    """Test client with the app lifespan running (fresh engine per test)"""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def engine(client):
    return client.app.state.engine


@pytest.fixture
def exam_session(client, engine):
    return client.portal.call(engine.open_session, "student-1", "exam-1", 3, 3600)


@pytest.fixture
def student_token(exam_session):
    return create_access_token("student-1", "student", session_id=exam_session.id, name="Ada", student_id="S001")


@pytest.fixture
def admin_token():
    return create_access_token("admin-1", "admin", name="Proctor")


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def status_of(client, engine, session_id):
    return client.portal.call(engine.store.get_session, session_id).status


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "InMemorySessionStore"

    def test_root(self, client):
        assert client.get("/").json()["websocket"] == "/ws"


class TestMonitor:

    def test_requires_token(self, client):
        assert client.get("/api/monitor/live").status_code == 401

    def test_requires_supervisor(self, client, student_token):
        assert client.get("/api/monitor/live", headers=auth(student_token)).status_code == 403

    def test_live_sessions(self, client, exam_session, admin_token):
        response = client.get("/api/monitor/live", params={"exam_id": "exam-1"}, headers=auth(admin_token))

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["sessions"][0]["sessionId"] == exam_session.id
        assert data["sessions"][0]["isOnline"] is False
        assert data["sessions"][0]["lastSeen"] is None

    def test_session_detail_with_violations(self, client, engine, exam_session, admin_token):
        client.portal.call(engine.ledger.record_violation, exam_session.id, "TAB_SWITCH")

        response = client.get(f"/api/monitor/sessions/{exam_session.id}", headers=auth(admin_token))

        assert response.status_code == 200
        data = response.json()
        assert data["violationCount"] == 1
        assert [v["eventType"] for v in data["violations"]] == ["TAB_SWITCH"]

    def test_session_detail_not_found(self, client, admin_token):
        assert client.get("/api/monitor/sessions/missing", headers=auth(admin_token)).status_code == 404


class TestSessionBoundary:

    def test_owner_submits_once(self, client, engine, exam_session, student_token):
        response = client.post(
            f"/api/sessions/{exam_session.id}/submit",
            json={"submissionType": "MANUAL"},
            headers=auth(student_token)
        )

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "SUBMITTED"
        assert response.json()["session"]["submissionType"] == "MANUAL"

        again = client.post(f"/api/sessions/{exam_session.id}/submit", headers=auth(student_token))
        assert again.status_code == 409

    def test_other_student_cannot_submit(self, client, exam_session):
        token = create_access_token("student-2", "student")

        response = client.post(f"/api/sessions/{exam_session.id}/submit", headers=auth(token))

        assert response.status_code == 403

    def test_supervisor_expires(self, client, engine, exam_session, admin_token):
        response = client.post(f"/api/sessions/{exam_session.id}/expire", headers=auth(admin_token))

        assert response.status_code == 200
        assert status_of(client, engine, exam_session.id) == SessionStatus.EXPIRED

    def test_student_cannot_expire(self, client, exam_session, student_token):
        response = client.post(f"/api/sessions/{exam_session.id}/expire", headers=auth(student_token))

        assert response.status_code == 403

    def test_bulk_answers(self, client, engine, exam_session, student_token):
        response = client.post(
            f"/api/sessions/{exam_session.id}/answers/bulk",
            json={"answers": [{"questionId": 1, "selectedAnswer": "A"}, {"questionId": "2", "selectedAnswer": "C"}]},
            headers=auth(student_token)
        )

        assert response.status_code == 200
        assert response.json()["saved"] == 2
        answers = client.portal.call(engine.store.get_answers, exam_session.id)
        assert {a.question_id: a.selected_answer for a in answers} == {"1": "A", "2": "C"}

    def test_bulk_answers_after_disqualification(self, client, engine, exam_session, student_token, admin_token):
        client.portal.call(engine.disqualification.expire, exam_session.id)

        response = client.post(
            f"/api/sessions/{exam_session.id}/answers/bulk",
            json={"answers": [{"questionId": "1", "selectedAnswer": "A"}]},
            headers=auth(student_token)
        )

        assert response.status_code == 403


class TestWebSocket:

    def test_rejects_missing_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws"):
                pass

        assert exc.value.code == 1008

    def test_rejects_unknown_session(self, client):
        token = create_access_token("student-1", "student", session_id="missing")

        with client.websocket_connect(f"/ws?token={token}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()

        assert exc.value.code == 1008

    def test_bearer_header_is_accepted(self, client, admin_token):
        with client.websocket_connect("/ws", headers=auth(admin_token)) as ws:
            ws.send_json({"event": "nonsense", "data": {}})
            frame = ws.receive_json()

        assert frame["event"] == "action:failed"
        assert frame["data"]["code"] == "INVALID_EVENT"

    def test_threshold_scenario(self, client, engine, exam_session, student_token, admin_token):
        """Three violations with max 3: one disqualification, fourth is declined"""
        with client.websocket_connect(f"/ws?token={admin_token}") as admin_ws:
            with client.websocket_connect(f"/ws?token={student_token}") as student_ws:
                assert admin_ws.receive_json()["event"] == "student:connected"

                for expected in (1, 2, 3):
                    student_ws.send_json({"event": "violation", "data": {"eventType": "TAB_SWITCH"}})
                    ack = student_ws.receive_json()
                    assert ack == {"event": "violation:ack", "data": {"violationCount": expected, "maxViolations": 3}}
                    new = admin_ws.receive_json()
                    assert new["event"] == "violation:new"
                    assert new["data"]["studentName"] == "Ada"
                    assert new["data"]["violationCount"] == expected

                disqualified = student_ws.receive_json()
                assert disqualified["event"] == "disqualified"
                assert disqualified["data"]["reason"] == "threshold exceeded"
                assert admin_ws.receive_json()["event"] == "student:disqualified"

                student_ws.send_json({"event": "violation", "data": {"eventType": "TAB_SWITCH"}})
                failed = student_ws.receive_json()
                assert failed["event"] == "action:failed"
                assert failed["data"]["code"] == "SESSION_NOT_ACTIVE"

        record = client.portal.call(engine.store.get_session, exam_session.id)
        assert record.status == SessionStatus.DISQUALIFIED
        assert record.violation_count == 3

    def test_disconnect_and_reconnect(self, client, engine, exam_session, student_token, admin_token):
        with client.websocket_connect(f"/ws?token={admin_token}") as admin_ws:
            with client.websocket_connect(f"/ws?token={student_token}") as student_ws:
                assert admin_ws.receive_json()["event"] == "student:connected"
                student_ws.send_json({"event": "violation", "data": {"eventType": "TAB_SWITCH"}})
                student_ws.receive_json()
                admin_ws.receive_json()
                student_ws.send_json({"event": "heartbeat", "data": {"timeRemaining": 1800}})
                assert admin_ws.receive_json()["event"] == "student:heartbeat"

            dropped = admin_ws.receive_json()
            assert dropped["event"] == "student:disconnected"
            assert dropped["data"]["status"] == "DISCONNECTED"
            assert status_of(client, engine, exam_session.id) == SessionStatus.DISCONNECTED

            with client.websocket_connect(f"/ws?token={student_token}"):
                back = admin_ws.receive_json()
                assert back["event"] == "student:connected"
                assert back["data"]["status"] == "ACTIVE"

        record = client.portal.call(engine.store.get_session, exam_session.id)
        assert record.violation_count == 1
        assert record.time_remaining_seconds == 1800

    def test_student_cannot_disqualify(self, client, engine, exam_session, student_token):
        with client.websocket_connect(f"/ws?token={student_token}") as ws:
            ws.send_json({"event": "admin:disqualify", "data": {"targetSessionId": exam_session.id}})
            ws.send_json({"event": "answer:save", "data": {"questionId": "q1", "selectedAnswer": "A"}})
            assert ws.receive_json()["event"] == "answer:saved"

        assert status_of(client, engine, exam_session.id) != SessionStatus.DISQUALIFIED

    def test_force_submit_keeps_status(self, client, engine, exam_session, student_token, admin_token):
        with client.websocket_connect(f"/ws?token={admin_token}") as admin_ws:
            with client.websocket_connect(f"/ws?token={student_token}") as student_ws:
                admin_ws.receive_json()
                admin_ws.send_json({"event": "admin:forceSubmit", "data": {"targetSessionId": exam_session.id}})

                frame = student_ws.receive_json()
                assert frame["event"] == "force:submit"
                assert status_of(client, engine, exam_session.id) == SessionStatus.ACTIVE
