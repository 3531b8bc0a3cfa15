"""Plan purchase, payment reconciliation and subscription bookkeeping.

The ledger (``user_payment_history``) is append-only and decides the next
expiry date; ``user_payment`` is the single current-state row per user.
"""

from datetime import date, datetime
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, repository
from .errors import InternalError, NotFoundError, PaymentRequiredError, ValidationError
from .models import utcnow
from .records import PaymentHistoryRecord, PaymentRecord, PlanRecord, UserRecord

logger = structlog.get_logger()

VALIDITY_YEARS = 1


class IncompleteContactError(ValidationError):
    pass


def add_one_year(base: datetime) -> datetime:
    """Same month and day next year; 29 February rolls over to 1 March."""
    try:
        return base.replace(year=base.year + 1)
    except ValueError:
        if base.month == 2 and base.day == 29:
            return base.replace(year=base.year + 1, month=3, day=1)
        raise InternalError("Invalid plan expiration date calculated")


def next_expiry(db: Session, user_id: int, now: Optional[datetime] = None) -> datetime:
    # renewals stack on the last computed expiry, not on today
    latest = repository.latest_settled_history(db, user_id)
    base = latest.plan_exp_date if latest else (now or utcnow())
    return add_one_year(base)


def create_user_payment(
    db: Session,
    gateway,
    user_id: int,
    plan_id: int,
    amount: Optional[float] = None,
    currency: Optional[str] = None,
    number_of_valid_years: Optional[int] = None,
    plan_exp_date: Optional[datetime] = None,
    billing_instrument: Optional[str] = None,
    coupon_id: Optional[int] = None,
    offer_id: Optional[int] = None,
) -> dict:
    user = repository.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    plan = repository.get_plan(db, plan_id)
    if plan is None:
        raise NotFoundError("The selected plan id is invalid.")
    if amount is None:
        amount = plan.amount
    if amount <= 0:
        raise ValidationError("Invalid plan amount")

    currency = currency or config.PAYMENT_CURRENCY
    order = gateway.create_order(amount, currency, metadata={"user_id": user_id, "plan_id": plan_id})
    exp_date = plan_exp_date or utcnow()
    validity = number_of_valid_years or VALIDITY_YEARS
    instrument = billing_instrument or "-"

    with repository.transaction(db):
        payment = repository.upsert_user_payment(
            db,
            user_id,
            create_only={"num_of_valid_years": validity, "plan_exp_date": exp_date},
            plan_id=plan_id,
            amount=amount,
            order_id=order["id"],
            billing_instrument=instrument,
            coupon_id=coupon_id,
            offer_id=offer_id,
            email=user.email,
            phone=user.phone_number or "-",
        )
        repository.add_history(
            db,
            user_id=user_id,
            plan_id=plan_id,
            amount=amount,
            payment_id=order["id"],
            num_of_valid_years=validity,
            plan_exp_date=exp_date,
            billing_instrument=instrument,
            status=repository.PENDING_STATUS,
            coupon_id=coupon_id,
            offer_id=offer_id,
            email=user.email,
            phone=user.phone_number,
        )
    logger.info("payment_order_created", user_id=user_id, order_id=order["id"], amount=amount)
    return {
        **payment.to_dict(),
        "gateway_order_id": order["id"],
        "gateway_amount": order["amount"],
        "currency": order["currency"],
    }


def get_user_payment_details(
    db: Session,
    gateway,
    notifier,
    user_id: int,
    payment_id: str,
    now: Optional[datetime] = None,
) -> dict:
    user = repository.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")

    status = gateway.fetch_payment(payment_id)
    order_id = status.get("order_id")
    if not order_id:
        raise ValidationError("Order ID not found in gateway payment")

    previous = repository.find_payment_history(db, payment_id)
    if previous is not None and previous.user_id != user_id:
        raise NotFoundError("Payment record not found")
    if previous is not None and previous.status == repository.SUCCESS_STATUS:
        return _already_reconciled(db, user_id, previous)

    payment = repository.get_user_payment(db, user_id, order_id=order_id)
    if payment is None:
        raise NotFoundError("Payment record not found")
    plan = repository.get_plan(db, payment.plan_id)

    instrument = status.get("method") or "-"
    charge_status = status.get("status") or "-"
    if charge_status != repository.SUCCESS_STATUS:
        _record_unsuccessful(db, user, payment, payment_id, charge_status, instrument, previous)
        raise PaymentRequiredError(f"Payment {charge_status}")

    try:
        with repository.transaction(db):
            exp_date = next_expiry(db, user_id, now=now)
            history = repository.add_history(
                db,
                user_id=user_id,
                plan_id=payment.plan_id,
                amount=payment.amount,
                payment_id=payment_id,
                num_of_valid_years=VALIDITY_YEARS,
                plan_exp_date=exp_date,
                billing_instrument=instrument,
                status=charge_status,
                coupon_id=payment.coupon_id,
                offer_id=payment.offer_id,
                email=user.email or "",
                phone=user.phone_number or "",
            )
            payment = repository.upsert_user_payment(
                db,
                user_id,
                plan_id=payment.plan_id,
                amount=payment.amount,
                num_of_valid_years=VALIDITY_YEARS,
                plan_exp_date=exp_date,
                payment_history_id=history.id,
                payment_id=payment_id,
                billing_instrument=instrument,
                email=user.email or "",
                phone=user.phone_number,
                coupon_id=payment.coupon_id,
                offer_id=payment.offer_id,
            )
            user = repository.update_user(db, user_id, payment_status="premium")
    except IntegrityError:
        # a concurrent webhook or details call settled this charge first
        previous = repository.find_payment_history(db, payment_id)
        if previous is None or previous.status != repository.SUCCESS_STATUS:
            raise
        return _already_reconciled(db, user_id, previous)
    logger.info("payment_reconciled", user_id=user_id, payment_id=payment_id, plan_exp_date=exp_date.isoformat())

    _notify(notifier, user, plan, payment, exp_date)

    # runs after the commit above; see DESIGN.md
    if not (user.name and user.email and user.phone_number):
        raise IncompleteContactError("User details incomplete, cannot send admin email.")
    return {"payment": payment, "exp_date": exp_date}


def _already_reconciled(db: Session, user_id: int, settled: PaymentHistoryRecord) -> dict:
    logger.info("payment_already_reconciled", user_id=user_id, payment_id=settled.payment_id)
    return {"payment": repository.get_user_payment(db, user_id), "exp_date": settled.plan_exp_date}


def _record_unsuccessful(db: Session, user: UserRecord, payment: PaymentRecord, payment_id: str, charge_status: str,
                         instrument: str, previous: Optional[PaymentHistoryRecord]) -> None:
    """Log a declined or pending charge in the ledger; the subscription itself is left alone."""
    if previous is not None and previous.status == charge_status:
        return
    with repository.transaction(db):
        repository.add_history(
            db,
            user_id=user.id,
            plan_id=payment.plan_id,
            amount=payment.amount,
            payment_id=payment_id,
            num_of_valid_years=VALIDITY_YEARS,
            plan_exp_date=payment.plan_exp_date,
            billing_instrument=instrument,
            status=charge_status,
            coupon_id=payment.coupon_id,
            offer_id=payment.offer_id,
            email=user.email or "",
            phone=user.phone_number or "",
        )
    logger.warning("payment_not_successful", user_id=user.id, payment_id=payment_id, status=charge_status)


def _notify(notifier, user: UserRecord, plan: Optional[PlanRecord], payment: PaymentRecord, exp_date: datetime) -> None:
    common = {
        "name": user.name,
        "quantity": VALIDITY_YEARS,
        "month_year": "Year",
        "amount": payment.amount,
        "exp_date": exp_date.date().isoformat(),
        "coupon_code": str(payment.coupon_id) if payment.coupon_id else "-",
        "offer_name": f"Offer ID {payment.offer_id}" if payment.offer_id else "-",
    }
    messages = [
        {
            "to": user.email or "",
            "subject": f"Thank you {user.name}, for updating your Powergotha plan",
            "template": "plan_payment_success",
            "data": {
                **common,
                "coupon": "Yes" if payment.coupon_id else "No",
                "offer": "Yes" if payment.offer_id else "No",
            },
        },
        {
            "to": config.ADMIN_EMAIL,
            "subject": f"Powergotha plan update details of {user.name}",
            "template": "admin_plan_payment_success",
            "data": {
                **common,
                "plan_name": plan.name if plan else "Premium Subscription",
                "email": user.email or "",
                "phone": user.phone_number or "",
            },
        },
    ]
    for message in messages:
        try:
            notifier.enqueue(message)
        except Exception:
            logger.exception("email_enqueue_failed", user_id=user.id, template=message["template"])


def get_plan_payment_history(db: Session, user_id: int) -> list[PaymentHistoryRecord]:
    if repository.get_user(db, user_id) is None:
        raise NotFoundError("User not found")
    return repository.list_history(db, user_id)


def handle_webhook(db: Session, gateway, notifier, event: dict) -> str:
    """Reconcile ``charge.succeeded`` events; everything else is only logged."""
    logger.info("webhook_received", event_type=event.get("type"), payment_id=event.get("payment_id"))
    if event.get("type") != "charge.succeeded":
        return "ignored"
    order_id, payment_id = event.get("order_id"), event.get("payment_id")
    if not order_id or not payment_id:
        return "ignored"
    if repository.history_has_payment(db, payment_id):
        return "duplicate"
    payment = repository.find_user_payment_by_order(db, order_id)
    if payment is None:
        logger.warning("webhook_unknown_order", order_id=order_id)
        return "unknown_order"
    try:
        get_user_payment_details(db, gateway, notifier, payment.user_id, payment_id)
    except IncompleteContactError as e:
        logger.warning("webhook_incomplete_contact", user_id=payment.user_id, error=e.message)
    except PaymentRequiredError:
        return "failed"
    return "processed"


def expire_plans(db: Session, today: Optional[date] = None) -> int:
    today = today or utcnow().date()
    with repository.transaction(db):
        count = repository.downgrade_expired_users(db, today)
    db.expire_all()
    logger.info("plans_expired", count=count, date=today.isoformat())
    return count
