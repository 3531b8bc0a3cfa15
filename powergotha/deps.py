from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
import jwt
from .db import get_db
from .errors import AuthenticationError, ForbiddenError
from .records import UserRecord
from .security import decode_access_token
from . import repository

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login", auto_error=False)
WEBHOOK_SIGNATURE_HEADER = "stripe-signature"


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> UserRecord:
    if not token:
        raise AuthenticationError("No token provided")
    try:
        payload = decode_access_token(token)
        uid = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise AuthenticationError("Invalid token")
    user = repository.get_user(db, uid)
    if not user:
        raise AuthenticationError("User not found")
    return user


def require_roles(*roles: str):
    def checker(user: UserRecord = Depends(get_current_user)) -> UserRecord:
        if not set(roles).intersection(user.roles):
            raise ForbiddenError("Insufficient permissions")
        return user
    return checker


def require_webhook_signature(request: Request) -> str:
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        raise AuthenticationError("Unauthorized webhook request")
    return signature


def get_gateway(request: Request):
    return request.app.state.gateway


def get_notifier(request: Request):
    return request.app.state.notifier


def get_sms_sender(request: Request):
    return request.app.state.sms


def get_strategies(request: Request):
    return request.app.state.strategies
