from datetime import datetime, timezone
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, JSON, Index, text

Base = declarative_base()

DEFAULT_ROLES = ("SuperAdmin", "User")
ACTIVE = text("deleted_at IS NULL")
SETTLED = text("status = 'succeeded' AND deleted_at IS NULL")


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("uq_users_phone_active", "phone_number", unique=True, sqlite_where=ACTIVE, postgresql_where=ACTIVE),
        Index("uq_users_google_active", "google_id", unique=True, sqlite_where=ACTIVE, postgresql_where=ACTIVE),
        Index("uq_users_facebook_active", "facebook_id", unique=True, sqlite_where=ACTIVE, postgresql_where=ACTIVE),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(191), nullable=False)
    phone_number = Column(String(20), nullable=True, index=True)
    email = Column(String(191), nullable=True, index=True)
    password = Column(String(255), nullable=True)
    payment_status = Column(String(20), nullable=False, default="free")
    provider = Column(JSON, nullable=False, default=lambda: ["local"])
    google_id = Column(String(191), nullable=True)
    facebook_id = Column(String(191), nullable=True)
    avatar = Column(String(500), nullable=True)
    farm_name = Column(String(191), nullable=True)
    otp_status = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    roles = relationship("Role", secondary="role_user", lazy="selectin")


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False)


class RoleUser(Base):
    __tablename__ = "role_user"
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class Otp(Base):
    __tablename__ = "otp"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    otp = Column(String(6), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class Plan(Base):
    __tablename__ = "plans"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(191), nullable=False)
    amount = Column(Float, nullable=False)
    plan_type = Column(String(50), nullable=True)
    language_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)


class UserPayment(Base):
    """Current subscription snapshot, one row per user."""
    __tablename__ = "user_payment"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    amount = Column(Float, nullable=False)
    order_id = Column(String(191), nullable=True, index=True)
    payment_id = Column(String(191), nullable=True)
    num_of_valid_years = Column(Integer, nullable=False, default=1)
    plan_exp_date = Column(DateTime, nullable=False)
    billing_instrument = Column(String(50), nullable=False, default="-")
    email = Column(String(191), nullable=True)
    phone = Column(String(20), nullable=True)
    coupon_id = Column(Integer, nullable=True)
    offer_id = Column(Integer, nullable=True)
    payment_history_id = Column(Integer, ForeignKey("user_payment_history.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class UserPaymentHistory(Base):
    """Append-only payment ledger; rows are only ever soft-deleted."""
    __tablename__ = "user_payment_history"
    __table_args__ = (
        # one successful entry per gateway charge
        Index("uq_history_payment_succeeded", "payment_id", unique=True,
              sqlite_where=SETTLED, postgresql_where=SETTLED),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    amount = Column(Float, nullable=False)
    payment_id = Column(String(191), nullable=False, index=True)
    num_of_valid_years = Column(Integer, nullable=False, default=1)
    plan_exp_date = Column(DateTime, nullable=False)
    billing_instrument = Column(String(50), nullable=False, default="-")
    status = Column(String(30), nullable=False)
    coupon_id = Column(Integer, nullable=True)
    offer_id = Column(Integer, nullable=True)
    email = Column(String(191), nullable=True)
    phone = Column(String(20), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    plan = relationship("Plan", lazy="joined")
