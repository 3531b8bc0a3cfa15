import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import config, repository
from .errors import ExpiredError, NotFoundError
from .models import utcnow
from .records import OtpRecord

OTP_MIN = 100000
OTP_MAX = 999999


def generate_code() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def issue_otp(db: Session, user_id: int, now: Optional[datetime] = None) -> OtpRecord:
    """Store a fresh code for the user, replacing any live one."""
    return repository.replace_otp(db, user_id, generate_code(), now=now)


def is_expired(otp: OtpRecord, now: Optional[datetime] = None) -> bool:
    # exactly OTP_EXPIRE_MINUTES old is still accepted
    now = now or utcnow()
    return now - otp.created_at > timedelta(minutes=config.OTP_EXPIRE_MINUTES)


def check_otp(db: Session, user_id: int, code: str, now: Optional[datetime] = None) -> OtpRecord:
    otp = repository.find_live_otp(db, user_id, code)
    if otp is None:
        raise NotFoundError("Invalid OTP.")
    if is_expired(otp, now):
        raise ExpiredError("OTP has expired. Please request a new one.")
    return otp
