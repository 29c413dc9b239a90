# services/payment.py - Stripe Checkout and Webhook Reconciliation
# ============================================================================

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import stripe
from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import session_scope, utcnow
from app.core.errors import AlreadyOwnedError, WebhookSignatureError
from app.models.purchase import Purchase, PurchaseStatus
from app.models.template import Template
from app.models.user import User, UserRole
from app.services import ledger

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = 2

logger = logging.getLogger(__name__)
deadletter = logging.getLogger("app.webhook.deadletter")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 320

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_FAILED = "payment_intent.payment_failed"
RECONCILE_ATTEMPTS = 2


class ReconcileOutcome:
    COMPLETED = "completed"    # pending row transitioned
    CREATED = "created"        # no pending row, inserted as completed
    DUPLICATE = "duplicate"    # already completed, nothing to do
    DROPPED = "dropped"        # unusable event, logged to the dead-letter logger
    IGNORED = "ignored"        # event type we only acknowledge


@dataclass
class CompletedCheckout:
    event_id: Optional[str]
    session_id: str
    template_id: int
    user_id: str
    email: str
    amount: int
    currency: str


class DroppedEvent(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def is_valid_email(email: Optional[str]) -> bool:
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    return bool(EMAIL_PATTERN.match(email))


def parse_completed_checkout(event: Dict[str, Any]) -> CompletedCheckout:
    """Pull the fields reconciliation needs out of a checkout.session.completed event."""
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    customer = obj.get("customer_details") or {}

    session_id = obj.get("id")
    raw_template_id = metadata.get("templateId")
    user_id = metadata.get("userId")
    email = customer.get("email") or obj.get("customer_email") or metadata.get("userEmail")
    amount = obj.get("amount_total")

    missing = [
        name for name, value in (
            ("session id", session_id),
            ("templateId", raw_template_id),
            ("userId", user_id),
            ("customer email", email),
            ("amount", amount),
        ) if value in (None, "")
    ]
    if missing:
        raise DroppedEvent(f"missing {', '.join(missing)}")

    try:
        template_id = int(raw_template_id)
    except (TypeError, ValueError):
        raise DroppedEvent(f"malformed templateId {raw_template_id!r}")
    if not isinstance(amount, int) or amount < 0:
        raise DroppedEvent(f"malformed amount {amount!r}")

    email = email.strip().lower()
    if not is_valid_email(email):
        raise DroppedEvent("invalid customer email")

    return CompletedCheckout(
        event_id=event.get("id"),
        session_id=str(session_id),
        template_id=template_id,
        user_id=str(user_id),
        email=email,
        amount=amount,
        currency=(obj.get("currency") or settings.DEFAULT_CURRENCY).lower(),
    )


class PaymentService:

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        db: AsyncSession,
        user: User,
        template_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        template = await db.get(Template, template_id)
        if not template:
            raise HTTPException(status_code=404, detail="Template not found")
        if template.creator_id and template.creator_id == user.id:
            raise HTTPException(status_code=400, detail="Cannot purchase your own template")
        if await ledger.is_owned(db, user.id, template.id):
            raise AlreadyOwnedError(template.id)
        if not settings.STRIPE_SECRET_KEY:
            raise HTTPException(status_code=503, detail="Payments are not configured")

        session = await self._call_stripe(
            stripe.checkout.Session.create,
            **self._checkout_params(user, template),
        )

        # The webhook may already have recorded this session as completed
        try:
            async with db.begin_nested():
                db.add(ledger.new_pending_purchase(user, template, session.id, ip_address, user_agent))
        except IntegrityError:
            logger.info(f"Purchase for session {session.id} already recorded")

        logger.info(f"💳 Checkout session {session.id} for template {template.id} by {user.id}")
        return {"sessionId": session.id, "url": session.url}

    def _checkout_params(self, user: User, template: Template) -> dict:
        currency = (template.currency or settings.DEFAULT_CURRENCY).lower()
        if template.stripe_price_id:
            line_item = {"price": template.stripe_price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": template.name,
                        "description": (template.description or template.name)[:500],
                    },
                    "unit_amount": template.price,
                },
                "quantity": 1,
            }
        expires_at = utcnow() + timedelta(minutes=settings.CHECKOUT_EXPIRY_MINUTES)
        return {
            "payment_method_types": ["card"],
            "line_items": [line_item],
            "mode": "payment",
            "success_url": (
                f"{settings.FRONTEND_URL}/payment/success"
                f"?session_id={{CHECKOUT_SESSION_ID}}&template_id={template.id}"
            ),
            "cancel_url": f"{settings.FRONTEND_URL}/template/{template.id}?payment=cancelled",
            "customer_email": user.email,
            "expires_at": int(expires_at.timestamp()),
            "metadata": {
                "templateId": str(template.id),
                "userId": user.id,
                "userEmail": user.email or "",
                "templateName": template.name,
                "templatePrice": str(template.price),
            },
        }

    async def _call_stripe(self, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                run_in_threadpool(fn, *args, **kwargs),
                timeout=settings.STRIPE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"❌ Stripe call {getattr(fn, '__qualname__', fn)} timed out")
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error: {e}")
        raise HTTPException(status_code=502, detail="Payment provider unavailable")

    async def verify_payment(self, db: AsyncSession, user: User, stripe_session_id: str) -> dict:
        result = await db.execute(
            select(Purchase).where(
                Purchase.stripe_session_id == stripe_session_id,
                Purchase.user_id == user.id,
            )
        )
        purchase = result.scalar_one_or_none()
        if not purchase:
            raise HTTPException(status_code=404, detail="Purchase not found")

        payment_status = None
        if purchase.status != PurchaseStatus.COMPLETED and settings.STRIPE_SECRET_KEY:
            session = await self._call_stripe(stripe.checkout.Session.retrieve, stripe_session_id)
            payment_status = getattr(session, "payment_status", None)

        return {
            "verified": purchase.status == PurchaseStatus.COMPLETED,
            "status": purchase.status,
            "templateId": purchase.template_id,
            "paymentStatus": payment_status,
        }

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise WebhookSignatureError("Webhook secret not configured")
        if not sig_header:
            raise WebhookSignatureError("Missing signature header")
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise WebhookSignatureError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookSignatureError("Invalid signature")

        # Plain data from here on; reconciliation runs after the ack
        return event.to_dict()

    async def handle_event(self, event: Dict[str, Any]) -> str:
        """Runs after the provider has been acknowledged; never raises."""
        event_type = event.get("type")
        event_id = event.get("id")
        try:
            if event_type == CHECKOUT_COMPLETED:
                return await self.reconcile_checkout_completed(event)
            if event_type in (CHECKOUT_EXPIRED, PAYMENT_FAILED):
                obj = (event.get("data") or {}).get("object") or {}
                logger.warning(f"⚠️ {event_type} for {obj.get('id')} (event {event_id})")
            else:
                logger.info(f"Unhandled event type {event_type} (event {event_id})")
            return ReconcileOutcome.IGNORED
        except Exception:
            logger.exception(f"❌ Processing event {event_id} failed")
            self._dead_letter(event_id, None, "processing error")
            return ReconcileOutcome.DROPPED

    async def reconcile_checkout_completed(self, event: Dict[str, Any]) -> str:
        try:
            checkout = parse_completed_checkout(event)
        except DroppedEvent as e:
            obj = (event.get("data") or {}).get("object") or {}
            self._dead_letter(event.get("id"), obj.get("id"), e.reason)
            return ReconcileOutcome.DROPPED

        for attempt in range(RECONCILE_ATTEMPTS):
            try:
                async with session_scope() as db:
                    outcome = await self._apply_completion(db, checkout)
                break
            except DroppedEvent as e:
                self._dead_letter(checkout.event_id, checkout.session_id, e.reason)
                return ReconcileOutcome.DROPPED
            except IntegrityError:
                # Another writer inserted this session id after our lookup;
                # the next pass finds that row and takes the update path
                if attempt + 1 == RECONCILE_ATTEMPTS:
                    raise
                logger.info(f"Session {checkout.session_id} recorded concurrently, reconciling again")

        if outcome == ReconcileOutcome.DUPLICATE:
            logger.info(f"🔁 Session {checkout.session_id} already completed")
        else:
            logger.info(
                f"✅ Purchase {outcome} for session {checkout.session_id}: "
                f"user {checkout.user_id}, template {checkout.template_id}, amount {checkout.amount}"
            )
        return outcome

    async def _apply_completion(self, db: AsyncSession, checkout: CompletedCheckout) -> str:
        purchase = await ledger.find_by_session_id(db, checkout.session_id, for_update=True)

        if purchase is not None:
            if purchase.status == PurchaseStatus.COMPLETED:
                return ReconcileOutcome.DUPLICATE
            if purchase.user_id != checkout.user_id or purchase.template_id != checkout.template_id:
                logger.warning(
                    f"Event metadata for {checkout.session_id} differs from the pending row; "
                    f"keeping user {purchase.user_id}, template {purchase.template_id}"
                )
            result = await db.execute(
                update(Purchase)
                .where(Purchase.id == purchase.id, Purchase.status == PurchaseStatus.PENDING)
                .values(
                    status=PurchaseStatus.COMPLETED,
                    completed_at=utcnow(),
                    amount_paid=checkout.amount,
                    currency=checkout.currency,
                )
            )
            if result.rowcount == 0:
                return ReconcileOutcome.DUPLICATE
            await self._count_download(db, purchase.template_id)
            return ReconcileOutcome.COMPLETED

        template = await db.get(Template, checkout.template_id)
        if template is None:
            raise DroppedEvent(f"template {checkout.template_id} does not exist")
        user = await self._resolve_user(db, checkout)
        if user is None:
            raise DroppedEvent(f"user {checkout.user_id} does not exist")

        db.add(Purchase(
            user_id=user.id,
            template_id=template.id,
            stripe_session_id=checkout.session_id,
            amount_paid=checkout.amount,
            currency=checkout.currency,
            status=PurchaseStatus.COMPLETED,
            completed_at=utcnow(),
        ))
        await db.flush()
        await self._count_download(db, template.id)
        return ReconcileOutcome.CREATED

    async def _resolve_user(self, db: AsyncSession, checkout: CompletedCheckout) -> Optional[User]:
        user = await db.get(User, checkout.user_id)
        if user is not None:
            return user

        # Email is the de-duplication key across login and purchase paths
        result = await db.execute(select(User).where(User.email == checkout.email))
        user = result.scalar_one_or_none()
        if user is not None:
            logger.info(f"Resolved purchase user {checkout.user_id} to {user.id} by email")
            return user

        if not settings.WEBHOOK_CREATE_MISSING_USERS:
            return None
        user = User(
            id=f"email_{hashlib.sha256(checkout.email.encode()).hexdigest()[:24]}",
            email=checkout.email,
            role=UserRole.USER,
            is_active=True,
        )
        db.add(user)
        await db.flush()
        logger.info(f"👤 Created user {user.id} from completed purchase")
        return user

    async def _count_download(self, db: AsyncSession, template_id: int):
        await db.execute(
            update(Template)
            .where(Template.id == template_id)
            .values(download_count=Template.download_count + 1)
        )

    def _dead_letter(self, event_id: Optional[str], session_id: Optional[str], reason: str):
        deadletter.error(
            f"Dropped payment event {event_id} (session {session_id}): {reason}",
            extra={"event_id": event_id, "stripe_session_id": session_id, "reason": reason},
        )
