# models/chat.py - AI Interaction Log and Template Intelligence
# ============================================================================

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Float, JSON, Index
from sqlalchemy.sql import func
from app.core.database import Base


class InteractionType:
    LEARNED_RESPONSE = "learned_response"
    LLM = "groq_api"
    SMART_FALLBACK = "smart_fallback"
    JSON_VALIDATION = "json_validation"
    SECURITY_REFUSAL = "security_refusal"
    FALLBACK = "fallback"
    ERROR = "error"


class ChatInteraction(Base):
    __tablename__ = "chat_interactions"
    __table_args__ = (
        Index("ix_chat_interactions_template_created", "template_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    template_id = Column(String(100), nullable=True)
    question = Column(Text, nullable=False)
    response = Column(Text, nullable=False)
    category = Column(String(30), nullable=False, default="general")
    interaction_type = Column(String(30), nullable=False)
    confidence = Column(Float, nullable=True)
    learning_score = Column(Integer, nullable=False, default=0)
    helpful = Column(Boolean, nullable=True)  # None until the user rates it
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TemplateIntelligence(Base):
    __tablename__ = "template_intelligence"

    template_id = Column(String(100), primary_key=True)
    total_interactions = Column(Integer, nullable=False, default=0)
    successful_interactions = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    common_questions = Column(JSON, nullable=False, default=dict)  # question -> count
    category_counts = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
