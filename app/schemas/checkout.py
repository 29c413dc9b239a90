# schemas/checkout.py - Checkout and Purchase Schemas
# ============================================================================
from pydantic import BaseModel, Field
from typing import Optional


class CheckoutRequest(BaseModel):
    template_id: int = Field(..., alias="templateId", gt=0)

    class Config:
        populate_by_name = True


class CheckoutResponse(BaseModel):
    sessionId: str
    url: Optional[str]


class VerifyPaymentResponse(BaseModel):
    verified: bool
    status: str
    templateId: int
    paymentStatus: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    eventType: Optional[str] = None
    eventId: Optional[str] = None
