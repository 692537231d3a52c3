from sqlalchemy import Column, String, DateTime, Integer, Numeric, Text, ForeignKey, text
from sqlalchemy.orm import relationship
from membella.database.database import Base


class Plan(Base):
    __tablename__ = "plans"

    plan_id = Column(String(64), primary_key=True)
    owner_id = Column(
        String(64), ForeignKey("owners.owner_id"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    duration = Column(Integer, nullable=False)  # days
    created_at = Column(
        DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("Owner", back_populates="plans")

