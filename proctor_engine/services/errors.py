"""
Proctor engine exceptions
"""


class ProctorError(Exception):
    """Base class for engine errors"""
    code = "PROCTOR_ERROR"


class SessionNotFound(ProctorError):
    """No session exists with the given id"""
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionNotActive(ProctorError):
    """Operation attempted on a session whose status does not allow it"""
    code = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str, status: str = None):
        message = f"Session {session_id} is not active"
        if status:
            message += f" (status={status})"
        super().__init__(message)
        self.session_id = session_id
        self.status = status


class Unauthorized(ProctorError):
    """Principal is missing, invalid, or lacks the required role"""
    code = "UNAUTHORIZED"


class StoreUnavailable(ProctorError):
    """The session store failed to apply a write"""
    code = "STORE_UNAVAILABLE"


class InvalidEvent(ProctorError):
    """Inbound frame is malformed or names an unknown event"""
    code = "INVALID_EVENT"


class NoSession(ProctorError):
    """Student event sent on a connection that is not bound to a session"""
    code = "NO_SESSION"


class RateLimited(ProctorError):
    """Inbound event exceeded its sliding-window limit"""
    code = "RATE_LIMITED"
