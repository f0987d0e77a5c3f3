import hashlib
import hmac
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_HOURS = 24
REFRESH_TOKEN_DAYS = 7

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Accounts created before salted hashing hold a bare SHA-256 hex digest.
_LEGACY_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def _get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ValueError("JWT_SECRET is required")
    if len(secret) < 32:
        raise ValueError("JWT_SECRET must be at least 32 characters")
    return secret


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def is_legacy_hash(hashed: Optional[str]) -> bool:
    return bool(hashed) and bool(_LEGACY_DIGEST.match(hashed))


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    if is_legacy_hash(hashed):
        digest = hashlib.sha256(plain.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, hashed)
    try:
        return pwd_context.verify(plain, hashed)
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed: str) -> bool:
    if is_legacy_hash(hashed):
        return True
    try:
        return pwd_context.needs_update(hashed)
    except (ValueError, TypeError):
        return True


def create_access_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["id"]),
        "empcode": user["emp_code"],
        "verified": bool(user.get("verified")),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(hours=ACCESS_TOKEN_HOURS),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def create_refresh_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["id"]),
        "empcode": user["emp_code"],
        "type": "refresh",
        "iat": now,
        "exp": now + timedelta(days=REFRESH_TOKEN_DAYS),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str, expected_type: str = "access") -> dict:
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except Exception as exc:
        raise ValueError("Invalid or expired token") from exc

    if "sub" not in payload:
        raise ValueError("Invalid token claims")

    # Tokens minted before the type claim existed are access tokens.
    if payload.get("type", "access") != expected_type:
        raise ValueError("Invalid token type")

    return payload
