"""
Tests for the Identity Context
"""
from datetime import datetime, timedelta

import jwt
import pytest

from proctor_engine.config import settings
from proctor_engine.services.errors import Unauthorized
from proctor_engine.services.identity import create_access_token, resolve_principal, verify_token


class TestTokens:

    def test_student_token_round_trip(self):
        token = create_access_token("u-1", "student", session_id="s-1", name="Ada", student_id="S01")

        principal = resolve_principal(token)

        assert principal.user_id == "u-1"
        assert principal.role == "student"
        assert principal.session_id == "s-1"
        assert principal.name == "Ada"
        assert principal.student_id == "S01"
        assert principal.is_supervisor is False

    def test_admin_is_supervisor(self):
        principal = resolve_principal(create_access_token("a-1", "admin"))

        assert principal.is_supervisor is True
        assert principal.session_id is None

    def test_numeric_ids_are_strings(self):
        now = datetime.utcnow()
        token = jwt.encode(
            {"user_id": 5, "role": "student", "session_id": 9, "iat": now, "exp": now + timedelta(hours=1)},
            settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
        )

        principal = resolve_principal(token)

        assert principal.user_id == "5"
        assert principal.session_id == "9"

    def test_verify_rejects_refresh_tokens(self):
        now = datetime.utcnow()
        token = jwt.encode(
            {"user_id": "u-1", "role": "student", "type": "refresh", "exp": now + timedelta(hours=1)},
            settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
        )

        with pytest.raises(jwt.InvalidTokenError):
            verify_token(token)


class TestRejections:

    def test_missing_token(self):
        with pytest.raises(Unauthorized):
            resolve_principal(None)

    def test_wrong_secret(self):
        token = jwt.encode({"user_id": "u-1", "role": "admin"}, "another-secret-of-sufficient-len", algorithm="HS256")

        with pytest.raises(Unauthorized):
            resolve_principal(token)

    def test_expired(self):
        past = datetime.utcnow() - timedelta(hours=2)
        token = jwt.encode(
            {"user_id": "u-1", "role": "student", "iat": past, "exp": past + timedelta(hours=1)},
            settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM
        )

        with pytest.raises(Unauthorized, match="expired"):
            resolve_principal(token)

    def test_missing_role(self):
        token = jwt.encode({"user_id": "u-1"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(Unauthorized):
            resolve_principal(token)

    def test_garbage(self):
        with pytest.raises(Unauthorized):
            resolve_principal("not-a-jwt")
