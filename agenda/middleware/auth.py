from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from agenda.database import get_db
from agenda.utils.security import read_token_owner
from agenda.models.auth import AuthUser


bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> AuthUser:
    """Business account behind the bearer token. Disabled accounts are refused."""
    owner_id = read_token_owner(credentials.credentials)
    if owner_id is None:
        raise _unauthorized("Session token is invalid or expired")

    owner = db.query(AuthUser).filter(AuthUser.user_id == owner_id).first()
    if owner is None or not owner.active:
        raise _unauthorized("Account not found or disabled")

    return owner


def get_owner_id(owner: AuthUser = Depends(get_current_owner)) -> str:
    """Tenant id passed explicitly to every repository and engine call"""
    return owner.user_id
