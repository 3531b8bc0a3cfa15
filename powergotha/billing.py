from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
import stripe
from .db import get_db
from .deps import get_current_user, get_gateway, get_notifier, require_roles, require_webhook_signature
from .errors import BadRequestError
from .records import UserRecord
from .responses import success
from . import payments

router = APIRouter(prefix="/payment", tags=["payment"])


class PaymentIn(BaseModel):
    plan_id: int = Field(gt=0)
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    number_of_valid_years: Optional[int] = Field(default=None, gt=0)
    plan_exp_date: Optional[datetime] = None
    billing_instrument: Optional[str] = None
    coupon_id: Optional[int] = Field(default=None, gt=0)
    offer_id: Optional[int] = Field(default=None, gt=0)


class PaymentDetailsIn(BaseModel):
    payment_id: str = Field(min_length=1)


@router.post("")
def create_payment(payload: PaymentIn, db: Session = Depends(get_db), user: UserRecord = Depends(get_current_user),
                   gateway=Depends(get_gateway)):
    order = payments.create_user_payment(db, gateway, user.id, **payload.model_dump())
    return success(order, "Success")


@router.post("/details")
def payment_details(payload: PaymentDetailsIn, db: Session = Depends(get_db), user: UserRecord = Depends(get_current_user),
                    gateway=Depends(get_gateway), notifier=Depends(get_notifier)):
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, payload.payment_id)
    return success({"payment": result["payment"], "expDate": result["exp_date"]}, "Success")


@router.get("/history")
def payment_history(db: Session = Depends(get_db), user: UserRecord = Depends(get_current_user)):
    return success(payments.get_plan_payment_history(db, user.id), "Success")


@router.get("/history/{user_id}")
def user_payment_history(user_id: int, db: Session = Depends(get_db), admin: UserRecord = Depends(require_roles("SuperAdmin"))):
    return success(payments.get_plan_payment_history(db, user_id), "Success")


@router.post("/webhook")
async def webhook(request: Request, signature: str = Depends(require_webhook_signature), db: Session = Depends(get_db),
                  gateway=Depends(get_gateway), notifier=Depends(get_notifier)):
    body = await request.body()
    try:
        event = gateway.parse_webhook(body, signature)
    except (ValueError, AttributeError, stripe.SignatureVerificationError):
        raise BadRequestError("Invalid webhook payload or signature")
    outcome = payments.handle_webhook(db, gateway, notifier, event)
    return success({"outcome": outcome}, "Webhook processed successfully")
