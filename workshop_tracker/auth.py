import time
from typing import Iterable, Optional

import jwt
from passlib.context import CryptContext

from .config import get_settings

# Use pbkdf2_sha256 as default to avoid bcrypt 72-byte limitation in some envs
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

ALGORITHM = "HS256"


def create_access_token(
    user_id: int,
    username: str,
    role: str,
    name: str,
    visible_stages: Iterable[int] = (),
    expires_delta: Optional[int] = None,
) -> str:
    settings = get_settings()
    now = int(time.time())
    exp = now + (expires_delta or settings.token_ttl_seconds)
    payload = {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "name": name,
        "visible_stages": sorted(visible_stages),
        "iat": now,
        "exp": exp,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and verify a token; raises ``jwt.PyJWTError`` when invalid or expired."""
    return jwt.decode(token, get_settings().jwt_secret, algorithms=[ALGORITHM])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)
