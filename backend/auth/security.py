"""
Password hashing and JWT helpers.

Passwords are hashed with Argon2id through passlib. Access tokens are signed
JWTs carrying the user id (``sub``), role and email; there are no refresh
tokens, a client logs in again once its token expires.
"""

import logging
import secrets
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
DEFAULT_EXPIRE_MINUTES = 60


def is_production_like() -> bool:
    """True when ENVIRONMENT is production or staging."""
    return os.environ.get("ENVIRONMENT", "development").lower() in ("production", "staging")


def _bounded_int_env(name: str, default: int, low: int, high: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default
    if not low <= value <= high:
        logger.warning(f"{name}={value} is outside {low}-{high}, using {default}")
        return default
    return value


def _load_secret_key() -> str:
    key = os.environ.get("JWT_SECRET_KEY")
    if key:
        return key
    if is_production_like():
        raise ValueError(
            "JWT_SECRET_KEY environment variable is required in production. "
            "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    logger.warning(
        "JWT_SECRET_KEY not set, using a temporary development key. "
        "Issued tokens stop working when the process restarts."
    )
    return "dev-insecure-key-" + secrets.token_urlsafe(32)


def _load_algorithm() -> str:
    algorithm = os.environ.get("JWT_ALGORITHM", "HS256")
    if algorithm not in SUPPORTED_ALGORITHMS:
        logger.warning(f"Unsupported JWT_ALGORITHM={algorithm}, falling back to HS256")
        return "HS256"
    return algorithm


pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

SECRET_KEY = _load_secret_key()
ALGORITHM = _load_algorithm()
# 1 minute to 24 hours
ACCESS_TOKEN_EXPIRE_MINUTES = _bounded_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", DEFAULT_EXPIRE_MINUTES, 1, 1440)


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2id.

    Example:
        >>> hashed = hash_password("my_secure_password")
        >>> verify_password("my_secure_password", hashed)
        True
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check a password against its stored hash. Unrecognised hashes never match."""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        logger.info("Stored password hash could not be identified")
        return False


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign an access token.

    Args:
        data: Claims to embed (sub, email, role)
        expires_delta: Lifetime override; defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT string
    """
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + lifetime

    claims = {**data, "exp": expire, "type": "access"}
    logger.debug(f"Access token issued for sub={data.get('sub')}, expires at {expire}")
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a token, returning its claims or None when invalid or expired."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"JWT verification failed: {e}")
        return None
