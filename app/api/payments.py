# api/payments.py - Checkout, webhook and purchase routes
# ============================================================================

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import client_ip, get_current_user
from app.core.database import get_db
from app.core.errors import WebhookSignatureError
from app.models.purchase import PurchaseStatus
from app.models.user import User
from app.schemas.checkout import CheckoutRequest, CheckoutResponse, VerifyPaymentResponse, WebhookAck
from app.services import ledger
from app.services.catalog import template_to_client
from app.services.payment import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])
payment_service = PaymentService()


@router.post("/payments/webhook", response_model=WebhookAck)
@router.post("/stripe/webhook", response_model=WebhookAck, include_in_schema=False)
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
    """Verify, acknowledge, then reconcile after the response is sent"""
    payload = await request.body()
    try:
        event = payment_service.verify_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as e:
        logger.warning(f"❌ Rejected webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    event_type = event.get("type")
    event_id = event.get("id")
    logger.info(f"📬 Webhook {event_type} ({event_id}) accepted")
    background_tasks.add_task(payment_service.handle_event, event)
    return WebhookAck(received=True, eventType=event_type, eventId=event_id)


@router.post("/checkout/create-session", response_model=CheckoutResponse)
@router.post("/stripe/create-checkout-session", response_model=CheckoutResponse, include_in_schema=False)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await payment_service.create_checkout_session(
        db,
        current_user,
        body.template_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()
    return result


@router.get("/checkout/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(
    session_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.verify_payment(db, current_user, session_id)


@router.get("/user/purchases")
@router.get("/purchases", include_in_schema=False)
@router.get("/payments/purchases", include_in_schema=False)
async def list_purchases(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await ledger.list_user_purchases(db, current_user.id)
    purchases = []
    for purchase, template in rows:
        completed = purchase.status == PurchaseStatus.COMPLETED
        purchases.append({
            "purchaseId": purchase.id,
            "purchasedAt": purchase.purchased_at.isoformat() if purchase.purchased_at else None,
            "completedAt": purchase.completed_at.isoformat() if purchase.completed_at else None,
            "amountPaid": purchase.amount_paid,
            "currency": purchase.currency,
            "status": purchase.status,
            "template": template_to_client(template, purchased=completed),
        })
    return {"purchases": purchases, "count": len(purchases)}
