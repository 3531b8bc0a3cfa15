import re
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from .db import get_db
from .deps import get_current_user, get_sms_sender, get_strategies
from .errors import AuthenticationError
from .records import UserRecord
from .responses import success
from . import auth_service

router = APIRouter(tags=["auth"])

PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PHONE_PATTERN = r"^[0-9]{10}$"


class RegisterIn(BaseModel):
    name: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)
    password: str

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        if not PASSWORD_RULE.match(v):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, "
                "one number, and one special character"
            )
        return v


class VerifyOtpIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: int = Field(alias="userId")
    otp: str = Field(min_length=6, max_length=6)


class ResendOtpIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: int = Field(alias="userId")


class LoginIn(BaseModel):
    phone_number: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ForgotPasswordIn(BaseModel):
    phone_number: str = Field(pattern=PHONE_PATTERN)


class ResetPasswordIn(BaseModel):
    phone_number: str = Field(pattern=PHONE_PATTERN)
    otp: str = Field(pattern=r"^[0-9]{6}$")
    password: str = Field(min_length=8)


class ChangePasswordIn(BaseModel):
    old_password: str
    password: str = Field(min_length=8)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("The password confirmation does not match.")
        return self


@router.post("/user-registration", status_code=201)
@router.post("/register", status_code=201)
def register(payload: RegisterIn, background: BackgroundTasks, db: Session = Depends(get_db), sms=Depends(get_sms_sender)):
    user, otp = auth_service.register(db, payload.name, payload.phone_number, payload.password)
    background.add_task(sms.send_otp, user.phone_number, otp)
    return success(
        {"otp": otp, "user_id": user.id, "phone_number": user.phone_number},
        "Success. Please verify the otp sent to your registered phone number",
        status_code=201,
    )


@router.post("/verify-otp")
def verify_otp(payload: VerifyOtpIn, db: Session = Depends(get_db)):
    auth_service.verify_otp(db, payload.user_id, payload.otp)
    return success(message="OTP verified successfully. Your account is now active.")


@router.post("/resend-otp")
def resend_otp(payload: ResendOtpIn, background: BackgroundTasks, db: Session = Depends(get_db), sms=Depends(get_sms_sender)):
    user, otp = auth_service.resend_otp(db, payload.user_id)
    background.add_task(sms.send_otp, user.phone_number, otp)
    return success(message="A new OTP has been sent to your phone number.")


@router.post("/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    return success(auth_service.login(db, payload.phone_number, payload.password))


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordIn, background: BackgroundTasks, db: Session = Depends(get_db), sms=Depends(get_sms_sender)):
    user, otp = auth_service.forgot_password(db, payload.phone_number)
    background.add_task(sms.send_otp, user.phone_number, otp)
    return success(message="We have sent an OTP to your phone number.")


@router.post("/reset-password")
def reset_password(payload: ResetPasswordIn, db: Session = Depends(get_db)):
    auth_service.reset_password(db, payload.phone_number, payload.otp, payload.password)
    return success(message="Your password has been changed!")


@router.post("/change-password")
def change_password(payload: ChangePasswordIn, db: Session = Depends(get_db), user: UserRecord = Depends(get_current_user)):
    auth_service.change_password(db, user.id, payload.old_password, payload.password)
    return success(message="Your password has been changed!")


@router.get("/auth/{provider}")
def oauth_start(provider: str, strategies=Depends(get_strategies)):
    return RedirectResponse(strategies.get(provider).authorization_url(), status_code=302)


@router.get("/auth/{provider}/callback")
def oauth_callback(provider: str, code: Optional[str] = None, error: Optional[str] = None,
                   db: Session = Depends(get_db), strategies=Depends(get_strategies)):
    strategy = strategies.get(provider)
    if error or not code:
        raise AuthenticationError("Unauthorized")
    user = auth_service.resolve_oauth_user(db, strategy.fetch_profile(code))
    return success(auth_service.build_oauth_response(user), "Success.")
