# models/user.py - User Database Model
# ============================================================================

from sqlalchemy import Column, String, DateTime, Boolean, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class UserRole:
    USER = "user"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)  # e.g. github_1234
    email = Column(String(320), unique=True, index=True, nullable=True)  # stored lower-cased
    name = Column(String(100), nullable=True)
    avatar_url = Column(String(500), nullable=True)
    github_id = Column(String(64), unique=True, nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.USER)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    preferences = Column(JSON, nullable=True)  # recommendation preferences, client field names
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    sessions = relationship("UserSession", back_populates="user")
    purchases = relationship("Purchase", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
