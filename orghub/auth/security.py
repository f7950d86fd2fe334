import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
import bcrypt as _bcrypt
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import InvalidToken
from ..models.models import User
from ..services.permissions import has_permission


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def get_password_hash(password: str) -> str:
    # pbkdf2_sha256 avoids native bcrypt backend issues
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    # Legacy bcrypt ($2a$/$2b$/$2y$) hashes are checked with the bcrypt module directly
    if hashed.startswith(("$2a$", "$2b$", "$2y$")):
        pb = plain.encode("utf-8")[:72]
        try:
            return _bcrypt.checkpw(pb, hashed.encode("utf-8"))
        except ValueError:
            return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def _create_token(sub: str, secret: str, ttl_seconds: int, extra: Optional[dict] = None, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User, now: Optional[datetime] = None) -> str:
    return _create_token(
        str(user.id),
        settings.jwt_secret,
        settings.access_ttl_seconds,
        extra={
            "type": ACCESS_TOKEN_TYPE,
            "full_name": user.full_name,
            "role": str(user.role_id),
            "branch": str(user.branch_id) if user.branch_id else None,
        },
        now=now,
    )


def create_refresh_token(user_id: str, device_id: str, now: Optional[datetime] = None) -> str:
    return _create_token(
        str(user_id),
        settings.refresh_secret,
        settings.refresh_ttl_seconds,
        extra={"type": REFRESH_TOKEN_TYPE, "device_id": device_id},
        now=now,
    )


def _decode(token: str, secret: str, expected_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise InvalidToken("Token expired")
    except jwt.InvalidTokenError:
        raise InvalidToken("Invalid token")
    if payload.get("type") != expected_type:
        raise InvalidToken("Invalid token type")
    return payload


def decode_access_token(token: str) -> dict:
    return _decode(token, settings.jwt_secret, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> dict:
    return _decode(token, settings.refresh_secret, REFRESH_TOKEN_TYPE)


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_access_token(creds.credentials)
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active or user.is_deleted:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


def require_permissions(*required_permissions: str):
    """
    Require at least one of the specified permissions (OR logic).
    Members of the admin role pass every check.
    """
    def _dep(user: User = Depends(get_current_user)):
        if not any(has_permission(user, perm) for perm in required_permissions):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep
