# schemas/ai.py - AI Assistant Schemas
# ============================================================================
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ChatTurn(BaseModel):
    role: str = "user"
    content: str = ""


class TemplateContext(BaseModel):
    template_id: Optional[str] = Field(None, alias="templateId", max_length=100)
    template_name: Optional[str] = Field(None, alias="templateName", max_length=200)
    description: Optional[str] = Field(None, max_length=2000)

    class Config:
        populate_by_name = True


class AskRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    history: List[ChatTurn] = Field(default_factory=list, max_length=100)
    template_context: Optional[TemplateContext] = Field(None, alias="templateContext")

    class Config:
        populate_by_name = True


class AskResponse(BaseModel):
    response: str
    source: str
    confidence: Optional[float] = None
    interactionId: Optional[int] = None


class FeedbackRequest(BaseModel):
    interaction_id: int = Field(..., alias="interactionId", gt=0)
    helpful: bool

    class Config:
        populate_by_name = True


class SetupInstructionsRequest(BaseModel):
    workflow: Dict[str, Any]
    template_id: str = Field(..., alias="templateId", min_length=1, max_length=100)
    purchase_id: Optional[int] = Field(None, alias="purchaseId")

    class Config:
        populate_by_name = True
