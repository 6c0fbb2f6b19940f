"""Bearer-token identity for callers of the document store.

Sign-in happens at an external identity provider; this module only issues
(for tooling and tests) and verifies the HS256 tokens it hands out. The
``sub`` claim is the caller's identity, e.g. a teacher uid.
"""
from datetime import datetime, timedelta, UTC
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from ..config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_SECRET

# Students write without signing in, so a missing token is not an error
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)


class TokenData(BaseModel):
    uid: str
    expires_at: Optional[datetime] = None


def create_access_token(uid: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed access token for ``uid``."""
    if expires_delta:
        expire = datetime.now(UTC) + expires_delta
    else:
        expire = datetime.now(UTC) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": uid, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> TokenData:
    """Verify and decode a JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise credentials_exception
    uid = payload.get("sub")
    if not uid or payload.get("type") != "access":
        raise credentials_exception
    exp = payload.get("exp")
    return TokenData(uid=uid, expires_at=datetime.fromtimestamp(exp, UTC) if exp else None)


def get_caller(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[str]:
    """Dependency returning the caller's identity, or None when unauthenticated."""
    if token is None:
        return None
    return verify_token(token).uid
