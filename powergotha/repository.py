"""Row access for the auth and payment services.

Every function takes an open ``Session`` and returns frozen records from
``powergotha.records``; nothing here commits. Callers decide the unit of work
with ``transaction``.
"""

from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Otp, Plan, Role, RoleUser, User, UserPayment, UserPaymentHistory, utcnow
from .records import OtpRecord, PaymentHistoryRecord, PaymentRecord, PlanRecord, UserRecord

PENDING_STATUS = "created"
SUCCESS_STATUS = "succeeded"


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


# users

def _user(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        name=row.name,
        phone_number=row.phone_number,
        email=row.email,
        payment_status=row.payment_status,
        provider=tuple(row.provider or ()),
        otp_status=bool(row.otp_status),
        farm_name=row.farm_name,
        avatar=row.avatar,
        google_id=row.google_id,
        facebook_id=row.facebook_id,
        roles=tuple(sorted(r.name for r in row.roles)),
    )


def _active_users(db: Session):
    return db.query(User).filter(User.deleted_at.is_(None))


def _user_row(db: Session, user_id: int) -> User:
    return _active_users(db).filter(User.id == user_id).one()


def get_user(db: Session, user_id: int) -> Optional[UserRecord]:
    row = _active_users(db).filter(User.id == user_id).first()
    return _user(row) if row else None


def find_user_by_phone(db: Session, phone_number: str) -> Optional[UserRecord]:
    row = _active_users(db).filter(User.phone_number == phone_number).first()
    return _user(row) if row else None


def find_user_by_email(db: Session, email: str) -> Optional[UserRecord]:
    row = _active_users(db).filter(func.lower(User.email) == email.lower()).first()
    return _user(row) if row else None


def find_user_by_provider_id(db: Session, provider: str, external_id: str) -> Optional[UserRecord]:
    column = {"google": User.google_id, "facebook": User.facebook_id}[provider]
    row = _active_users(db).filter(column == external_id).first()
    return _user(row) if row else None


def get_password_hash(db: Session, user_id: int) -> Optional[str]:
    return _active_users(db).with_entities(User.password).filter(User.id == user_id).scalar()


def create_user(db: Session, **fields) -> UserRecord:
    row = User(**fields)
    db.add(row)
    db.flush()
    return _user(row)


def update_user(db: Session, user_id: int, **fields) -> UserRecord:
    row = _user_row(db, user_id)
    for key, value in fields.items():
        setattr(row, key, value)
    db.flush()
    return _user(row)


def assign_role(db: Session, user_id: int, role_name: str) -> bool:
    role = db.query(Role).filter(Role.name == role_name).first()
    if role is None:
        return False
    db.add(RoleUser(user_id=user_id, role_id=role.id))
    db.flush()
    db.expire(_user_row(db, user_id), ["roles"])
    return True


# otp

def _otp(row: Otp) -> OtpRecord:
    return OtpRecord(id=row.id, user_id=row.user_id, otp=row.otp, created_at=row.created_at)


def replace_otp(db: Session, user_id: int, code: str, now: Optional[datetime] = None) -> OtpRecord:
    now = now or utcnow()
    db.query(Otp).filter(Otp.user_id == user_id, Otp.deleted_at.is_(None)).update(
        {Otp.deleted_at: now}, synchronize_session=False
    )
    row = Otp(user_id=user_id, otp=code, created_at=now)
    db.add(row)
    db.flush()
    return _otp(row)


def find_live_otp(db: Session, user_id: int, code: str) -> Optional[OtpRecord]:
    row = (
        db.query(Otp)
        .filter(Otp.user_id == user_id, Otp.otp == code, Otp.deleted_at.is_(None))
        .order_by(Otp.id.desc())
        .first()
    )
    return _otp(row) if row else None


def consume_otp(db: Session, otp_id: int) -> None:
    db.query(Otp).filter(Otp.id == otp_id).update({Otp.deleted_at: utcnow()}, synchronize_session=False)


# plans and payments

def get_plan(db: Session, plan_id: int) -> Optional[PlanRecord]:
    row = db.query(Plan).filter(Plan.id == plan_id, Plan.deleted_at.is_(None)).first()
    if row is None:
        return None
    return PlanRecord(id=row.id, name=row.name, amount=row.amount, plan_type=row.plan_type, language_id=row.language_id)


def _payment(row: UserPayment) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        amount=row.amount,
        order_id=row.order_id,
        payment_id=row.payment_id,
        num_of_valid_years=row.num_of_valid_years,
        plan_exp_date=row.plan_exp_date,
        billing_instrument=row.billing_instrument,
        email=row.email,
        phone=row.phone,
        coupon_id=row.coupon_id,
        offer_id=row.offer_id,
        payment_history_id=row.payment_history_id,
    )


def get_user_payment(db: Session, user_id: int, order_id: Optional[str] = None) -> Optional[PaymentRecord]:
    q = db.query(UserPayment).filter(UserPayment.user_id == user_id)
    if order_id is not None:
        q = q.filter(UserPayment.order_id == order_id)
    row = q.first()
    return _payment(row) if row else None


def find_user_payment_by_order(db: Session, order_id: str) -> Optional[PaymentRecord]:
    row = db.query(UserPayment).filter(UserPayment.order_id == order_id).first()
    return _payment(row) if row else None


def upsert_user_payment(db: Session, user_id: int, create_only: Optional[dict] = None, **fields) -> PaymentRecord:
    """Update the user's snapshot row, creating it if needed.

    ``create_only`` holds values that apply only when the row is new.
    """
    row = db.query(UserPayment).filter(UserPayment.user_id == user_id).first()
    if row is None:
        row = UserPayment(user_id=user_id, **{**(create_only or {}), **fields})
        db.add(row)
    else:
        for key, value in fields.items():
            setattr(row, key, value)
    db.flush()
    return _payment(row)


def _history(row: UserPaymentHistory) -> PaymentHistoryRecord:
    return PaymentHistoryRecord(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        amount=row.amount,
        payment_id=row.payment_id,
        num_of_valid_years=row.num_of_valid_years,
        plan_exp_date=row.plan_exp_date,
        billing_instrument=row.billing_instrument,
        status=row.status,
        created_at=row.created_at,
        email=row.email,
        phone=row.phone,
        coupon_id=row.coupon_id,
        offer_id=row.offer_id,
        plan_name=row.plan.name if row.plan is not None else None,
    )


def _active_history(db: Session, user_id: int):
    return (
        db.query(UserPaymentHistory)
        .filter(UserPaymentHistory.user_id == user_id, UserPaymentHistory.deleted_at.is_(None))
        .order_by(UserPaymentHistory.created_at.desc(), UserPaymentHistory.id.desc())
    )


def latest_settled_history(db: Session, user_id: int) -> Optional[PaymentHistoryRecord]:
    """Newest successful entry; pending orders and failed charges never move the expiry."""
    row = _active_history(db, user_id).filter(UserPaymentHistory.status == SUCCESS_STATUS).first()
    return _history(row) if row else None


def find_payment_history(db: Session, payment_id: str) -> Optional[PaymentHistoryRecord]:
    row = (
        db.query(UserPaymentHistory)
        .filter(
            UserPaymentHistory.payment_id == payment_id,
            UserPaymentHistory.status != PENDING_STATUS,
            UserPaymentHistory.deleted_at.is_(None),
        )
        .order_by(UserPaymentHistory.created_at.desc(), UserPaymentHistory.id.desc())
        .first()
    )
    return _history(row) if row else None


def history_has_payment(db: Session, payment_id: str, status: str = SUCCESS_STATUS) -> bool:
    q = db.query(UserPaymentHistory.id).filter(
        UserPaymentHistory.payment_id == payment_id,
        UserPaymentHistory.status == status,
        UserPaymentHistory.deleted_at.is_(None),
    )
    return db.query(q.exists()).scalar()


def add_history(db: Session, **fields) -> PaymentHistoryRecord:
    row = UserPaymentHistory(**fields)
    db.add(row)
    db.flush()
    return _history(row)


def list_history(db: Session, user_id: int) -> list[PaymentHistoryRecord]:
    return [_history(row) for row in _active_history(db, user_id)]


def downgrade_expired_users(db: Session, today: date) -> int:
    expired = (
        db.query(UserPayment.user_id)
        .filter(func.date(UserPayment.plan_exp_date) <= today.isoformat())
        .distinct()
    )
    return (
        db.query(User)
        .filter(User.id.in_(expired.scalar_subquery()), User.payment_status != "free")
        .update({User.payment_status: "free"}, synchronize_session=False)
    )
