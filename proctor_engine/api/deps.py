"""
Shared FastAPI dependencies
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..services.engine import ProctorEngine
from ..services.errors import Unauthorized
from ..services.identity import Principal, resolve_principal

bearer_scheme = HTTPBearer(auto_error=False)


def get_engine(request: Request) -> ProctorEngine:
    return request.app.state.engine


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Principal:
    token = credentials.credentials if credentials else None
    try:
        return resolve_principal(token)
    except Unauthorized as e:
        raise HTTPException(status_code=401, detail=str(e))


def require_supervisor(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_supervisor:
        raise HTTPException(status_code=403, detail="Supervisor role required")
    return principal
