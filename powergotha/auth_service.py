"""Registration, OTP verification, login and password reset.

Functions here hold the business rules only; they take an open session, raise
``powergotha.errors`` exceptions and never touch the HTTP layer. Delivering the
OTP (SMS) is the caller's job, which is why issuing functions return the code.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import otp as otp_service
from . import repository
from .errors import AuthenticationError, ConflictError, ForbiddenError, InternalError, NotFoundError
from .oauth import OAuthProfile
from .records import UserRecord
from .security import create_access_token, hash_password, verify_password

logger = structlog.get_logger()

DEFAULT_ROLE = "User"
LOGIN_ROLES = {"User", "SuperAdmin"}


def register(db: Session, name: str, phone_number: str, password: str) -> tuple[UserRecord, str]:
    if repository.find_user_by_phone(db, phone_number):
        raise ConflictError("Phone number already registered.")
    try:
        with repository.transaction(db):
            user = repository.create_user(
                db,
                name=name,
                phone_number=phone_number,
                password=hash_password(password),
                otp_status=False,
                provider=["local"],
            )
            if not repository.assign_role(db, user.id, DEFAULT_ROLE):
                raise InternalError("Default user role not found. Can't register user.")
            otp = otp_service.issue_otp(db, user.id)
    except IntegrityError:
        raise ConflictError("Phone number already registered.")
    logger.info("user_registered", user_id=user.id)
    return repository.get_user(db, user.id), otp.otp


def verify_otp(db: Session, user_id: int, code: str, now: Optional[datetime] = None) -> UserRecord:
    if repository.get_user(db, user_id) is None:
        raise NotFoundError("User not found.")
    otp = otp_service.check_otp(db, user_id, code, now=now)
    with repository.transaction(db):
        repository.consume_otp(db, otp.id)
        user = repository.update_user(db, user_id, otp_status=True)
    logger.info("otp_verified", user_id=user_id)
    return user


def resend_otp(db: Session, user_id: int) -> tuple[UserRecord, str]:
    user = repository.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found.")
    with repository.transaction(db):
        otp = otp_service.issue_otp(db, user_id)
    logger.info("otp_reissued", user_id=user_id)
    return user, otp.otp


def login(db: Session, phone_number: str, password: str) -> dict:
    user = repository.find_user_by_phone(db, phone_number)
    if user is None:
        raise AuthenticationError("Mobile number is not registered.")
    if not user.otp_status:
        raise ForbiddenError("Please verify OTP before logging in.")
    if not verify_password(password, repository.get_password_hash(db, user.id)):
        logger.info("login_failed", user_id=user.id)
        raise AuthenticationError("Invalid credentials.")
    if not LOGIN_ROLES.intersection(user.roles):
        raise ForbiddenError("User does not have a valid role.")

    payment = repository.get_user_payment(db, user.id)
    return {
        "token": create_access_token(user),
        "user_id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone_number,
        "farm_name": user.farm_name,
        "payment_status": user.payment_status,
        "plan_expires_on": payment.plan_exp_date if payment else None,
        "otp_status": user.otp_status,
    }


def forgot_password(db: Session, phone_number: str) -> tuple[UserRecord, str]:
    user = repository.find_user_by_phone(db, phone_number)
    if user is None:
        raise NotFoundError("We can't find a user with that phone number.")
    with repository.transaction(db):
        otp = otp_service.issue_otp(db, user.id)
    return user, otp.otp


def reset_password(db: Session, phone_number: str, code: str, password: str, now: Optional[datetime] = None) -> None:
    user = repository.find_user_by_phone(db, phone_number)
    if user is None:
        raise NotFoundError("Invalid OTP or phone number.")
    otp = otp_service.check_otp(db, user.id, code, now=now)
    with repository.transaction(db):
        repository.update_user(db, user.id, password=hash_password(password))
        repository.consume_otp(db, otp.id)
    logger.info("password_reset", user_id=user.id)


def change_password(db: Session, user_id: int, old_password: str, password: str) -> None:
    if not verify_password(old_password, repository.get_password_hash(db, user_id)):
        raise AuthenticationError("The old password is incorrect.")
    with repository.transaction(db):
        repository.update_user(db, user_id, password=hash_password(password))


def resolve_oauth_user(db: Session, profile: OAuthProfile) -> UserRecord:
    """Find the user behind an OAuth profile, linking or creating as needed."""
    id_field = f"{profile.provider}_id"
    user = repository.find_user_by_provider_id(db, profile.provider, profile.id)
    if user is None and profile.email:
        user = repository.find_user_by_email(db, profile.email)

    with repository.transaction(db):
        if user is not None:
            providers = list(user.provider)
            if profile.provider not in providers:
                providers.append(profile.provider)
            user = repository.update_user(
                db, user.id, provider=providers, avatar=profile.avatar or user.avatar, **{id_field: profile.id}
            )
        else:
            user = repository.create_user(
                db,
                name=profile.name or profile.email or profile.provider,
                email=profile.email,
                phone_number=None,
                password=None,
                otp_status=True,
                provider=[profile.provider],
                avatar=profile.avatar,
                **{id_field: profile.id},
            )
            repository.assign_role(db, user.id, DEFAULT_ROLE)
    return repository.get_user(db, user.id)


def build_oauth_response(user: UserRecord) -> dict:
    if user is None:
        raise AuthenticationError("Unauthorized")
    return {"token": create_access_token(user), "user": user.to_dict()}
