"""
Proctor Session Engine

Tracks live exam sessions, records integrity violations, enforces the
disqualification policy, and streams session state to supervisors over
WebSocket.
"""
__version__ = "1.0.0"
