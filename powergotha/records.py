"""Immutable snapshots of rows, handed from the repository layer to the services."""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Record:
    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class UserRecord(Record):
    id: int
    name: str
    phone_number: Optional[str]
    email: Optional[str]
    payment_status: str
    provider: tuple[str, ...]
    otp_status: bool
    farm_name: Optional[str] = None
    avatar: Optional[str] = None
    google_id: Optional[str] = None
    facebook_id: Optional[str] = None
    roles: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["provider"] = list(self.provider)
        data["roles"] = list(self.roles)
        return data


@dataclass(frozen=True)
class OtpRecord(Record):
    id: int
    user_id: int
    otp: str
    created_at: datetime


@dataclass(frozen=True)
class PlanRecord(Record):
    id: int
    name: str
    amount: float
    plan_type: Optional[str] = None
    language_id: Optional[int] = None


@dataclass(frozen=True)
class PaymentRecord(Record):
    id: int
    user_id: int
    plan_id: int
    amount: float
    order_id: Optional[str]
    payment_id: Optional[str]
    num_of_valid_years: int
    plan_exp_date: datetime
    billing_instrument: str
    email: Optional[str] = None
    phone: Optional[str] = None
    coupon_id: Optional[int] = None
    offer_id: Optional[int] = None
    payment_history_id: Optional[int] = None


@dataclass(frozen=True)
class PaymentHistoryRecord(Record):
    id: int
    user_id: int
    plan_id: int
    amount: float
    payment_id: str
    num_of_valid_years: int
    plan_exp_date: datetime
    billing_instrument: str
    status: str
    created_at: datetime
    email: Optional[str] = None
    phone: Optional[str] = None
    coupon_id: Optional[int] = None
    offer_id: Optional[int] = None
    plan_name: Optional[str] = None
