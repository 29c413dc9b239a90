# models/template.py - Catalog Template Model
# ============================================================================

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Float, JSON, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class Template(Base):
    __tablename__ = "templates"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_templates_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False, default=0)  # minor units (cents)
    currency = Column(String(3), nullable=False, default="usd")
    image_url = Column(String(500), nullable=True)
    workflow = Column(JSON, nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)
    creator_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    stripe_price_id = Column(String(100), nullable=True)
    download_count = Column(Integer, nullable=False, default=0)
    view_count = Column(Integer, nullable=False, default=0)
    rating = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    purchases = relationship("Purchase", back_populates="template")
