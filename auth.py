import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from database import get_db, oid
from errors import AuthError

logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def create_token(user: Dict[str, Any], expires_minutes: int = JWT_EXPIRES_MINUTES) -> str:
    to_encode = {
        "id": str(user.get("_id") or user.get("id")),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
    }
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except ExpiredSignatureError:
        raise AuthError("Token expired")
    except JWTError:
        raise AuthError("Invalid token")


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    """Resolve the bearer token to the current user document.

    The role is read from the stored user, not from the token claims, so a
    demoted user loses access as soon as the record changes.
    """
    if not authorization:
        raise AuthError("Authorization token is required")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise AuthError("Invalid Authorization header")
    payload = decode_token(token)
    user_id = payload.get("id")
    if not user_id:
        raise AuthError("Invalid token payload")
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise AuthError("User not found")
    return user


def require_role(*roles: str):
    """Dependency factory: current user must hold one of `roles`."""

    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        role = (user.get("role") or "").lower()
        if role not in roles:
            logger.info("Denied %s access to user %s", "/".join(roles), user.get("_id"))
            raise AuthError(f"Access denied. {' or '.join(r.capitalize() for r in roles)} role required.", status_code=403)
        return user

    return checker


require_admin = require_role("admin")
require_customer = require_role("customer")
