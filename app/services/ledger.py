# services/ledger.py - Purchase Ledger
# ============================================================================
#
# The ledger is the only place that decides ownership. A user owns a
# template iff a `completed` purchase exists for the pair; pending rows
# never count.

from typing import List, Optional, Set, Tuple

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.purchase import Purchase, PurchaseStatus
from app.models.template import Template
from app.models.user import User


def owned_clause(user_id: str):
    return (Purchase.user_id == user_id) & (Purchase.status == PurchaseStatus.COMPLETED)


def owned_template_ids_query(user_id: str):
    return select(Purchase.template_id).where(owned_clause(user_id)).distinct()


async def is_owned(db: AsyncSession, user_id: str, template_id: int) -> bool:
    result = await db.execute(
        select(exists().where(owned_clause(user_id), Purchase.template_id == template_id))
    )
    return bool(result.scalar())


async def has_pending_purchase(db: AsyncSession, user_id: str, template_id: int) -> bool:
    """Optimistic "processing" state for display only; never grants access."""
    result = await db.execute(
        select(exists().where(
            Purchase.user_id == user_id,
            Purchase.template_id == template_id,
            Purchase.status == PurchaseStatus.PENDING,
        ))
    )
    return bool(result.scalar())


async def owned_template_ids(db: AsyncSession, user_id: str) -> Set[int]:
    result = await db.execute(owned_template_ids_query(user_id))
    return set(result.scalars().all())


async def find_by_session_id(db: AsyncSession, stripe_session_id: str, for_update: bool = False) -> Optional[Purchase]:
    query = select(Purchase).where(Purchase.stripe_session_id == stripe_session_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


def new_pending_purchase(
    user: User,
    template: Template,
    stripe_session_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Purchase:
    return Purchase(
        user_id=user.id,
        template_id=template.id,
        stripe_session_id=stripe_session_id,
        amount_paid=template.price,
        currency=(template.currency or "usd").lower(),
        status=PurchaseStatus.PENDING,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
    )


async def list_user_purchases(db: AsyncSession, user_id: str) -> List[Tuple[Purchase, Template]]:
    result = await db.execute(
        select(Purchase, Template)
        .join(Template, Template.id == Purchase.template_id)
        .where(Purchase.user_id == user_id)
        .order_by(Purchase.purchased_at.desc(), Purchase.id.desc())
    )
    return [(purchase, template) for purchase, template in result.all()]
