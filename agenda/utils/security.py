from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from agenda.config import settings


def create_access_token(owner_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a bearer token for a business account. The account id is the token subject."""
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.JWT_EXPIRE_MINUTES)
    claims = {"sub": owner_id, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def read_token_owner(token: str) -> Optional[str]:
    """Account id carried by a valid token; None when the token is forged, expired or has no subject"""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    return claims.get("sub")
