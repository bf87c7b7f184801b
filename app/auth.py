# app/auth.py
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "change_me_long_random_secret")
JWT_EXP_MINUTES = int(os.getenv("JWT_EXP_MINUTES", "1440"))
JWT_ALG = os.getenv("JWT_ALG", "HS256")

PRIVILEGED_ROLES = {"admin", "moderator"}


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str = "user"
    is_active: bool = True

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


# ---------- token helpers ----------
def create_access_token(claims: Dict[str, Any], minutes: Optional[int] = None) -> str:
    """Create a JWT from a dict of claims. Issuing is for tests and operators only."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes or JWT_EXP_MINUTES)
    to_encode = {**claims, "exp": expire}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)

def decode_token(token: str) -> Dict[str, Any]:
    """Decode & verify a JWT, return payload or raise JWTError."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])

def identity_from_token(token: str) -> Identity:
    """Bearer credential -> Identity. Raises HTTP 401 on any failure."""
    try:
        claims = decode_token(token)
        ident = Identity(
            user_id=int(claims["sub"]),
            role=str(claims.get("role", "user")),
            is_active=bool(claims.get("is_active", True)),
        )
    except (JWTError, KeyError, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    if not ident.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is inactive")
    return ident


# ---------- FastAPI dependency to require auth ----------
_bearer = HTTPBearer(auto_error=False)

def require_identity(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Identity:
    """FastAPI dependency that validates the Bearer token and returns the caller's Identity."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Bearer token")
    return identity_from_token(credentials.credentials)
