"""
Identity Context - JWT verification and principal resolution

Tokens are issued by the external login flow. The payload carries:
    user_id, role, type="access", iat, exp
and, for student tokens, the exam session they are bound to:
    session_id, name, student_id
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt

from ..config import settings
from .errors import Unauthorized


@dataclass(frozen=True)
class Principal:
    """Authenticated caller of a connection or request"""
    user_id: str
    role: str
    session_id: Optional[str] = None
    name: Optional[str] = None
    student_id: Optional[str] = None

    @property
    def is_supervisor(self) -> bool:
        return self.role in settings.SUPERVISOR_ROLES


def create_access_token(
    user_id: str,
    role: str,
    session_id: Optional[str] = None,
    name: Optional[str] = None,
    student_id: Optional[str] = None
) -> str:
    """
    Create an access token (development and tests only).

    Args:
        user_id: The user's id
        role: User role (student, admin, ...)
        session_id: Exam session the token is bound to
        name: Display name shown to supervisors
        student_id: Institution student number
    """
    now = datetime.utcnow()
    payload = {
        "user_id": user_id,
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS)
    }
    if session_id:
        payload["session_id"] = session_id
    if name:
        payload["name"] = name
    if student_id:
        payload["student_id"] = student_id

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode an access token.

    Raises:
        jwt.ExpiredSignatureError: Token has expired
        jwt.InvalidTokenError: Token is invalid
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])

    # Only check token type if it exists in payload
    if payload.get("type") and payload.get("type") != "access":
        raise jwt.InvalidTokenError("Invalid token type. Expected access")

    return payload


def resolve_principal(token: Optional[str]) -> Principal:
    """
    Resolve a bearer token to a Principal.

    Raises:
        Unauthorized: token missing, invalid, expired, or without user_id/role
    """
    if not token:
        raise Unauthorized("Missing token")

    try:
        payload = verify_token(token)
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.PyJWTError as e:
        raise Unauthorized(f"Invalid token: {e}")

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or not role:
        raise Unauthorized("Token is missing user_id or role")

    session_id = payload.get("session_id")
    student_id = payload.get("student_id")
    return Principal(
        user_id=str(user_id),
        role=role,
        session_id=str(session_id) if session_id else None,
        name=payload.get("name"),
        student_id=str(student_id) if student_id else None,
    )
