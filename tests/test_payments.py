from datetime import date, datetime

import pytest

from powergotha import payments, repository
from powergotha.errors import NotFoundError, PaymentRequiredError, ValidationError
from powergotha.models import User, UserPayment, UserPaymentHistory

from conftest import BrokenNotifier, make_active_user


def settle(db, user_id, plan_id, exp_date, created_at, payment_id="ch_old"):
    with repository.transaction(db):
        repository.add_history(
            db,
            user_id=user_id,
            plan_id=plan_id,
            amount=499.0,
            payment_id=payment_id,
            plan_exp_date=exp_date,
            status="succeeded",
            created_at=created_at,
        )


def ordered(db, gateway, user, plan):
    """Create an order and a matching successful charge at the gateway."""
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_1", order["gateway_order_id"])
    return order


@pytest.mark.parametrize("base, expected", [
    (datetime(2024, 6, 1), datetime(2025, 6, 1)),
    (datetime(2024, 2, 29), datetime(2025, 3, 1)),
    (datetime(2023, 12, 31, 18, 30), datetime(2024, 12, 31, 18, 30)),
])
def test_add_one_year(base, expected):
    assert payments.add_one_year(base) == expected


def test_create_user_payment_records_pending_order(db, gateway, user, plan):
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    assert order["gateway_order_id"] == "pi_1"
    assert order["gateway_amount"] == 49900
    assert order["currency"] == "inr"
    assert order["amount"] == 499.0
    assert gateway.orders[0]["metadata"] == {"user_id": user.id, "plan_id": plan.id}

    snapshot = repository.get_user_payment(db, user.id)
    assert snapshot.order_id == "pi_1"
    history = repository.list_history(db, user.id)
    assert [h.status for h in history] == [repository.PENDING_STATUS]
    assert repository.get_user(db, user.id).payment_status == "free"


def test_create_user_payment_unknown_plan(db, gateway, user):
    with pytest.raises(NotFoundError):
        payments.create_user_payment(db, gateway, user.id, 404)
    assert gateway.orders == []


def test_create_user_payment_rejects_non_positive_amount(db, gateway, user, plan):
    with pytest.raises(ValidationError):
        payments.create_user_payment(db, gateway, user.id, plan.id, amount=0)
    assert db.query(UserPayment).count() == 0


def test_new_order_does_not_shorten_live_subscription(db, gateway, user, plan):
    with repository.transaction(db):
        repository.upsert_user_payment(
            db, user.id, plan_id=plan.id, amount=499.0, plan_exp_date=datetime(2030, 1, 1), order_id="pi_old"
        )
    payments.create_user_payment(db, gateway, user.id, plan.id)
    snapshot = repository.get_user_payment(db, user.id)
    assert snapshot.plan_exp_date == datetime(2030, 1, 1)
    assert snapshot.order_id == "pi_1"


def test_first_purchase_expires_one_year_from_now(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    now = datetime(2025, 3, 10, 12, 0)
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=now)

    assert result["exp_date"] == datetime(2026, 3, 10, 12, 0)
    assert result["payment"].payment_id == "ch_1"
    assert result["payment"].plan_exp_date == datetime(2026, 3, 10, 12, 0)
    assert repository.get_user(db, user.id).payment_status == "premium"


def test_expiry_extends_from_last_settled_entry(db, gateway, notifier, user, plan):
    settle(db, user.id, plan.id, datetime(2024, 6, 1), created_at=datetime(2023, 6, 1))
    ordered(db, gateway, user, plan)
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2024, 3, 1))
    assert result["exp_date"] == datetime(2025, 6, 1)


def test_lapsed_renewal_still_stacks_on_old_expiry(db, gateway, notifier, user, plan):
    settle(db, user.id, plan.id, datetime(2023, 1, 15), created_at=datetime(2022, 1, 15))
    ordered(db, gateway, user, plan)
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))
    assert result["exp_date"] == datetime(2024, 1, 15)


def test_leap_day_expiry_rolls_to_march(db, gateway, notifier, user, plan):
    settle(db, user.id, plan.id, datetime(2024, 2, 29), created_at=datetime(2023, 2, 28))
    ordered(db, gateway, user, plan)
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")
    assert result["exp_date"] == datetime(2025, 3, 1)


def test_reconciliation_writes_ledger_snapshot_and_flag(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))

    settled = repository.latest_settled_history(db, user.id)
    assert settled.payment_id == "ch_1"
    assert settled.status == "succeeded"
    assert settled.billing_instrument == "card"
    assert settled.plan_exp_date == result["exp_date"]
    assert result["payment"].payment_history_id == settled.id
    assert db.query(UserPaymentHistory).count() == 2


def test_reconciliation_sends_customer_and_admin_mail(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))

    customer, admin = notifier.messages
    assert customer["to"] == "asha@example.com"
    assert customer["template"] == "plan_payment_success"
    assert customer["data"]["exp_date"] == "2026-01-01"
    assert admin["template"] == "admin_plan_payment_success"
    assert admin["data"]["plan_name"] == "Premium Yearly"
    assert admin["data"]["phone"] == "9876543210"


def test_missing_order_id_writes_nothing(db, gateway, notifier, user, plan):
    payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_1", None)
    with pytest.raises(ValidationError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")

    assert db.query(UserPaymentHistory).count() == 1
    assert repository.get_user(db, user.id).payment_status == "free"
    assert notifier.messages == []


def test_unknown_order_is_not_found(db, gateway, notifier, user, plan):
    payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_1", "pi_someone_else")
    with pytest.raises(NotFoundError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")
    assert repository.get_user(db, user.id).payment_status == "free"


def test_mail_failure_does_not_undo_reconciliation(db, gateway, user, plan):
    ordered(db, gateway, user, plan)
    result = payments.get_user_payment_details(db, gateway, BrokenNotifier(), user.id, "ch_1")
    assert result["payment"].payment_id == "ch_1"
    assert repository.get_user(db, user.id).payment_status == "premium"


def test_incomplete_contact_raises_after_commit(db, gateway, notifier, plan):
    user = make_active_user(db, phone="9123456780", email=None)
    ordered(db, gateway, user, plan)
    with pytest.raises(payments.IncompleteContactError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")

    assert repository.get_user(db, user.id).payment_status == "premium"
    assert repository.latest_settled_history(db, user.id).payment_id == "ch_1"


def test_history_is_newest_first_with_plan_name(db, gateway, notifier, user, plan):
    settle(db, user.id, plan.id, datetime(2024, 6, 1), created_at=datetime(2023, 6, 1), payment_id="ch_a")
    settle(db, user.id, plan.id, datetime(2025, 6, 1), created_at=datetime(2024, 6, 1), payment_id="ch_b")

    first = payments.get_plan_payment_history(db, user.id)
    second = payments.get_plan_payment_history(db, user.id)
    assert first == second
    assert [h.payment_id for h in first] == ["ch_b", "ch_a"]
    assert first[0].plan_name == "Premium Yearly"


def test_history_empty_for_new_user(db, user):
    assert payments.get_plan_payment_history(db, user.id) == []


def test_webhook_reconciles_then_skips_duplicates(db, gateway, notifier, user, plan):
    order = ordered(db, gateway, user, plan)
    event = {"type": "charge.succeeded", "payment_id": "ch_1", "order_id": order["gateway_order_id"]}

    assert payments.handle_webhook(db, gateway, notifier, event) == "processed"
    assert payments.handle_webhook(db, gateway, notifier, event) == "duplicate"
    assert db.query(UserPaymentHistory).filter(UserPaymentHistory.payment_id == "ch_1").count() == 1
    assert repository.get_user(db, user.id).payment_status == "premium"


def test_webhook_ignores_other_events_and_unknown_orders(db, gateway, notifier):
    assert payments.handle_webhook(db, gateway, notifier, {"type": "charge.refunded"}) == "ignored"
    event = {"type": "charge.succeeded", "payment_id": "ch_9", "order_id": "pi_unknown"}
    assert payments.handle_webhook(db, gateway, notifier, event) == "unknown_order"


def test_expire_plans_downgrades_lapsed_users_only(db, plan):
    lapsed = make_active_user(db, phone="9000000001", email="a@example.com")
    live = make_active_user(db, phone="9000000002", email="b@example.com")
    with repository.transaction(db):
        for user, exp in ((lapsed, datetime(2025, 1, 9, 23, 0)), (live, datetime(2025, 1, 11))):
            repository.upsert_user_payment(db, user.id, plan_id=plan.id, amount=499.0, plan_exp_date=exp)
            repository.update_user(db, user.id, payment_status="premium")

    assert payments.expire_plans(db, today=date(2025, 1, 10)) == 1
    assert repository.get_user(db, lapsed.id).payment_status == "free"
    assert repository.get_user(db, live.id).payment_status == "premium"
    assert payments.expire_plans(db, today=date(2025, 1, 10)) == 0


def test_expire_plans_includes_today(db, plan, user):
    with repository.transaction(db):
        repository.upsert_user_payment(db, user.id, plan_id=plan.id, amount=499.0, plan_exp_date=datetime(2025, 1, 10, 8))
        repository.update_user(db, user.id, payment_status="premium")
    payments.expire_plans(db, today=date(2025, 1, 10))
    assert db.query(User).filter(User.id == user.id).one().payment_status == "free"


def test_repeated_details_call_does_not_extend_again(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    first = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))
    second = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))

    assert first["exp_date"] == second["exp_date"] == datetime(2026, 1, 1)
    assert second["payment"].plan_exp_date == datetime(2026, 1, 1)
    assert db.query(UserPaymentHistory).filter(UserPaymentHistory.payment_id == "ch_1").count() == 1
    assert len(notifier.messages) == 2


def test_details_after_webhook_returns_stored_expiry(db, gateway, notifier, user, plan):
    order = ordered(db, gateway, user, plan)
    event = {"type": "charge.succeeded", "payment_id": "ch_1", "order_id": order["gateway_order_id"]}
    payments.handle_webhook(db, gateway, notifier, event)
    after_webhook = repository.get_user_payment(db, user.id).plan_exp_date

    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")
    assert result["exp_date"] == after_webhook
    assert repository.get_user_payment(db, user.id).plan_exp_date == after_webhook
    assert db.query(UserPaymentHistory).filter(UserPaymentHistory.payment_id == "ch_1").count() == 1


def test_older_charge_replayed_after_new_order(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    first = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))
    payments.create_user_payment(db, gateway, user.id, plan.id)

    replay = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")
    assert replay["exp_date"] == first["exp_date"]


def test_charge_of_another_user_is_not_found(db, gateway, notifier, user, plan):
    ordered(db, gateway, user, plan)
    payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")
    other = make_active_user(db, phone="9000000009", email="other@example.com")
    with pytest.raises(NotFoundError):
        payments.get_user_payment_details(db, gateway, notifier, other.id, "ch_1")


def test_failed_charge_is_recorded_without_granting_premium(db, gateway, notifier, user, plan):
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    before = repository.get_user_payment(db, user.id)
    gateway.add_payment("ch_f", order["gateway_order_id"], status="failed")

    with pytest.raises(PaymentRequiredError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_f")
    with pytest.raises(PaymentRequiredError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_f")

    failed = db.query(UserPaymentHistory).filter(UserPaymentHistory.payment_id == "ch_f").all()
    assert [row.status for row in failed] == ["failed"]
    assert repository.get_user(db, user.id).payment_status == "free"
    assert repository.get_user_payment(db, user.id) == before
    assert repository.latest_settled_history(db, user.id) is None
    assert notifier.messages == []


def test_failed_charge_is_not_the_base_for_next_expiry(db, gateway, notifier, user, plan):
    settle(db, user.id, plan.id, datetime(2024, 6, 1), created_at=datetime(2023, 6, 1))
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_f", order["gateway_order_id"], status="failed")
    with pytest.raises(PaymentRequiredError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_f")

    gateway.add_payment("ch_ok", order["gateway_order_id"])
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_ok")
    assert result["exp_date"] == datetime(2025, 6, 1)


def test_pending_charge_settles_later(db, gateway, notifier, user, plan):
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_1", order["gateway_order_id"], status="pending")
    with pytest.raises(PaymentRequiredError):
        payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1")

    gateway.add_payment("ch_1", order["gateway_order_id"])
    result = payments.get_user_payment_details(db, gateway, notifier, user.id, "ch_1", now=datetime(2025, 1, 1))
    assert result["exp_date"] == datetime(2026, 1, 1)
    assert repository.get_user(db, user.id).payment_status == "premium"


def test_webhook_for_failed_charge(db, gateway, notifier, user, plan):
    order = payments.create_user_payment(db, gateway, user.id, plan.id)
    gateway.add_payment("ch_f", order["gateway_order_id"], status="failed")
    event = {"type": "charge.succeeded", "payment_id": "ch_f", "order_id": order["gateway_order_id"]}
    assert payments.handle_webhook(db, gateway, notifier, event) == "failed"
    assert repository.get_user(db, user.id).payment_status == "free"


def test_history_for_unknown_user(db):
    with pytest.raises(NotFoundError):
        payments.get_plan_payment_history(db, 404)
