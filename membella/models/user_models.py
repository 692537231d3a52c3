from sqlalchemy import Column, String, DateTime, Text, text
from sqlalchemy.orm import relationship
from membella.database.database import Base


class Owner(Base):
    __tablename__ = "owners"

    owner_id = Column(String(64), primary_key=True)
    org_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    contact_info = Column(String(255), nullable=True)
    created_at = Column(
        DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )

    # Use string references for relationships to avoid circular imports
    plans = relationship("Plan", back_populates="owner")


class Member(Base):
    __tablename__ = "members"

    member_id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(100), nullable=True)
    phone = Column(String(32), nullable=True)
    created_at = Column(
        DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )

    payments = relationship("Payment", back_populates="member")
    subscriptions = relationship("Subscription", back_populates="member")
