from passlib.context import CryptContext
from typing import Optional
import jwt, datetime as dt
from . import config
from .records import UserRecord

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256", "bcrypt_sha256", "bcrypt"],
    default="pbkdf2_sha256",
    deprecated="auto",
    pbkdf2_sha256__rounds=config.PASSWORD_HASH_ROUNDS,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password[:72])


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password[:72], password_hash)
    except ValueError:
        # unrecognised hash format, e.g. a legacy plaintext column
        return False


def create_access_token(user: UserRecord, now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user.id),
        "roles": list(user.roles),
        "type": "access",
        "iat": now,
        "exp": now + dt.timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Raises ``jwt.PyJWTError`` for bad signatures, expiry or a non-access token."""
    payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    return payload
