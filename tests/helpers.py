"""
Seeding and lookup helpers shared by the test modules.

All helpers are coroutines; sync tests wrap them in ``asyncio.run``.
"""

import hashlib
import hmac
import time
from typing import List, Optional

from sqlalchemy import select

from app.core.config import settings
from app.core.database import session_scope, utcnow
from app.models.chat import ChatInteraction
from app.models.purchase import Purchase, PurchaseStatus
from app.models.template import Template
from app.models.user import User, UserRole
from app.services.auth import AuthService

WORKFLOW = {
    "nodes": [
        {"type": "n8n-nodes-base.webhook"},
        {"type": "n8n-nodes-base.set"},
        {"type": "n8n-nodes-base.Set"},
        {"type": "n8n-nodes-base.slack"},
        {"type": "@n8n/n8n-nodes-langchain.openAi"},
        {"type": "n8n-nodes-base.slack"},
    ]
}


async def create_user(user_id: str = "u1", email: Optional[str] = None, role: str = UserRole.USER,
                      name: str = "Test User", is_active: bool = True) -> User:
    async with session_scope() as db:
        user = User(
            id=user_id,
            email=email if email is not None else f"{user_id}@example.com",
            name=name,
            role=role,
            is_active=is_active,
        )
        db.add(user)
    return user


async def create_template(template_id: int, name: str = "Template", price: int = 699,
                          workflow=None, is_public: bool = True, creator_id: Optional[str] = None,
                          download_count: int = 0, view_count: int = 0) -> Template:
    async with session_scope() as db:
        template = Template(
            id=template_id,
            name=name,
            description=f"{name} description",
            price=price,
            currency="usd",
            workflow=workflow if workflow is not None else WORKFLOW,
            is_public=is_public,
            creator_id=creator_id,
            download_count=download_count,
            view_count=view_count,
        )
        db.add(template)
    return template


async def create_purchase(user_id: str, template_id: int, session_id: str,
                          status: str = PurchaseStatus.COMPLETED, amount: int = 699) -> Purchase:
    async with session_scope() as db:
        purchase = Purchase(
            user_id=user_id,
            template_id=template_id,
            stripe_session_id=session_id,
            amount_paid=amount,
            currency="usd",
            status=status,
            completed_at=utcnow() if status == PurchaseStatus.COMPLETED else None,
        )
        db.add(purchase)
    return purchase


async def login(user_id: str) -> str:
    """Open a session for an existing user and return its bearer token."""
    async with session_scope() as db:
        user = await db.get(User, user_id)
        _, token = await AuthService().create_session(db, user, "127.0.0.1", "pytest")
    return token


async def purchases_for(session_id: Optional[str] = None) -> List[Purchase]:
    async with session_scope() as db:
        query = select(Purchase).order_by(Purchase.id)
        if session_id is not None:
            query = query.where(Purchase.stripe_session_id == session_id)
        result = await db.execute(query)
        return list(result.scalars().all())


async def get_template(template_id: int) -> Template:
    async with session_scope() as db:
        return await db.get(Template, template_id)


async def get_user(user_id: str) -> Optional[User]:
    async with session_scope() as db:
        return await db.get(User, user_id)


async def interactions() -> List[ChatInteraction]:
    async with session_scope() as db:
        result = await db.execute(select(ChatInteraction).order_by(ChatInteraction.id))
        return list(result.scalars().all())


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def signed_headers(payload: str, secret: Optional[str] = None, timestamp: Optional[int] = None) -> dict:
    """Stripe-Signature header for ``payload``, signed the way Stripe signs webhooks."""
    secret = settings.STRIPE_WEBHOOK_SECRET if secret is None else secret
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def checkout_completed_event(session_id: str = "sess_1", template_id=7, user_id: Optional[str] = "u1",
                             amount: Optional[int] = 699, email: Optional[str] = "u1@example.com",
                             event_id: str = "evt_1") -> dict:
    metadata = {"templateId": str(template_id) if template_id is not None else None, "userId": user_id}
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount,
                "currency": "usd",
                "customer_details": {"email": email},
                "metadata": {k: v for k, v in metadata.items() if v is not None},
                "payment_status": "paid",
            }
        },
    }
