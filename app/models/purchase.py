# models/purchase.py - Purchase Ledger Model
# ============================================================================

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class PurchaseStatus:
    PENDING = "pending"
    COMPLETED = "completed"


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        Index("ix_purchases_owner", "user_id", "template_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    # Join key with the payment provider; immutable once written
    stripe_session_id = Column(String(255), unique=True, nullable=False)
    amount_paid = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=PurchaseStatus.PENDING)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    purchased_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="purchases")
    template = relationship("Template", back_populates="purchases")
