"""
Session/auth guard.

Bearer tokens are HS256 JWTs carrying `userId` and `iat`. A token is accepted
only if it verifies, has not expired, was not issued before the configured
global cutoff, and still refers to an active user.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database

import config
from database import find_by_id, get_db
from errors import Forbidden, Unauthorized
from policy import ADMIN, role_of

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

_DURATION = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    if stored.startswith("$2"):
        return bcrypt.checkpw(password.encode(), stored.encode())
    # Accounts imported before hashing was introduced.
    return password == stored


def parse_duration(value: str) -> timedelta:
    match = _DURATION.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNITS[unit])


def parse_cutoff(value: str) -> Optional[int]:
    """Epoch seconds for TOKEN_INVALID_BEFORE, accepting seconds, milliseconds or an ISO date."""
    if not value:
        return None
    try:
        cutoff = float(value)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Ignoring unparseable TOKEN_INVALID_BEFORE=%r", value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    if cutoff > 1e12:
        cutoff = cutoff / 1000
    return int(cutoff) or None


def create_token(user_doc: dict) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "userId": str(user_doc["_id"]),
        "iat": issued,
        "exp": issued + parse_duration(config.JWT_EXPIRES_IN),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Token is not valid")
    cutoff = parse_cutoff(config.TOKEN_INVALID_BEFORE)
    issued_at = payload.get("iat")
    if cutoff and issued_at and issued_at < cutoff:
        logger.warning("Token for user %s invalidated by cutoff (iat=%s)", payload.get("userId"), issued_at)
        raise Unauthorized("Token invalidated")
    return payload


def resolve_token(db: Database, token: Optional[str]) -> dict:
    if not token:
        raise Unauthorized("No token, authorization denied")
    payload = decode_token(token)
    user = find_by_id(db, "user", payload.get("userId"))
    if not user:
        raise Unauthorized("Token is not valid")
    if user.get("isActive") is False:
        raise Unauthorized("Account is inactive")
    user["role"] = role_of(user)
    user["id"] = str(user["_id"])
    return user


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                     db: Database = Depends(get_db)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("No token, authorization denied")
    return resolve_token(db, credentials.credentials)


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] != ADMIN:
        raise Forbidden("Access denied. Admin only.")
    return user
