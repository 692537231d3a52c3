from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey, Text, JSON, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import text

from membella.database.database import Base
from membella.schemas.payment import PaymentStatus, PaymentMethod
from membella.schemas.subscription import SubscriptionStatus


def _enum_column(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


class Payment(Base):
    __tablename__ = "payments"

    payment_id = Column(String(36), primary_key=True)
    member_id = Column(
        String(64), ForeignKey("members.member_id"), nullable=False, index=True
    )
    plan_id = Column(String(64), ForeignKey("plans.plan_id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(_enum_column(PaymentMethod, "payment_method"), nullable=False)
    status = Column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_charge_id = Column(String(64), nullable=True, unique=True, index=True)
    gateway_source_id = Column(String(64), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    member = relationship("Member", back_populates="payments")
    plan = relationship("Plan")
    subscription = relationship("Subscription", back_populates="payment", uselist=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    subscription_id = Column(String(36), primary_key=True)
    member_id = Column(
        String(64), ForeignKey("members.member_id"), nullable=False, index=True
    )
    plan_id = Column(String(64), ForeignKey("plans.plan_id"), nullable=False, index=True)
    # One subscription per payment, enforced by the database
    payment_id = Column(
        String(36), ForeignKey("payments.payment_id"), nullable=False, unique=True
    )
    status = Column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    member = relationship("Member", back_populates="subscriptions")
    plan = relationship("Plan")
    payment = relationship("Payment", back_populates="subscription")
