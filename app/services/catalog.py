# services/catalog.py - Template Catalog and Recommendations
# ============================================================================

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.template import Template
from app.services import ledger

logger = logging.getLogger(__name__)

NODE_TYPE_PREFIX = "n8n-nodes-base."
STRUCTURAL_NODE_TYPES = {"Unknown", "Set", "NoOp"}
MAX_LISTED_APPS = 10

# Storage column -> client field
TEMPLATE_FIELDS = {
    "id": "id",
    "name": "name",
    "description": "description",
    "price": "price",
    "currency": "currency",
    "image_url": "imageUrl",
    "is_public": "isPublic",
    "creator_id": "creatorId",
    "download_count": "downloadCount",
    "view_count": "viewCount",
    "rating": "rating",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


def load_workflow(workflow: Any) -> Dict[str, Any]:
    if isinstance(workflow, (str, bytes)):
        try:
            workflow = json.loads(workflow)
        except ValueError:
            return {}
    return workflow if isinstance(workflow, dict) else {}


def parse_workflow_details(workflow: Any) -> Dict[str, Any]:
    """Step count and integrated services; a missing node list yields zero/empty."""
    document = load_workflow(workflow)
    nodes = document.get("nodes")
    if not isinstance(nodes, list):
        return {"steps": 0, "apps": [], "hasWorkflow": bool(document)}

    apps = []
    for node in nodes:
        node_type = node.get("type") if isinstance(node, dict) else None
        if not isinstance(node_type, str) or not node_type:
            node_type = "Unknown"
        if node_type.startswith(NODE_TYPE_PREFIX):
            node_type = node_type[len(NODE_TYPE_PREFIX):]
        if node_type in STRUCTURAL_NODE_TYPES or node_type in apps:
            continue
        apps.append(node_type)

    return {"steps": len(nodes), "apps": apps[:MAX_LISTED_APPS], "hasWorkflow": True}


def uses_integrations(apps: List[str], integrations: List[str]) -> bool:
    """Case-insensitive substring match of any wanted integration against the node apps."""
    return any(wanted in app.lower() for app in apps for wanted in integrations)


def template_to_client(
    template: Template,
    purchased: Optional[bool] = None,
    include_workflow: bool = False,
) -> Dict[str, Any]:
    data = {}
    for column, field in TEMPLATE_FIELDS.items():
        value = getattr(template, column)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        data[field] = value
    data["workflowDetails"] = parse_workflow_details(template.workflow)
    if include_workflow:
        data["workflow"] = load_workflow(template.workflow)
    if purchased is not None:
        data["purchased"] = purchased
    return data


class CatalogService:

    async def list_public(self, db: AsyncSession, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        result = await db.execute(
            select(Template)
            .where(Template.is_public.is_(True))
            .order_by(Template.created_at.desc(), Template.id.desc())
        )
        templates = result.scalars().all()
        owned = await ledger.owned_template_ids(db, user_id) if user_id else set()
        return [
            template_to_client(t, purchased=(t.id in owned) if user_id else None)
            for t in templates
        ]

    async def get_template(self, db: AsyncSession, template_id: int) -> Optional[Template]:
        return await db.get(Template, template_id)

    async def record_view(self, db: AsyncSession, template_id: int) -> bool:
        result = await db.execute(
            update(Template)
            .where(Template.id == template_id)
            .values(view_count=Template.view_count + 1)
        )
        return result.rowcount > 0

    async def recommendations(
        self,
        db: AsyncSession,
        user_id: str,
        limit: Optional[int] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        limit = limit or settings.RECOMMENDATION_LIMIT
        preferences = preferences or {}
        max_price = preferences.get("maxPrice")
        integrations = [i.lower() for i in preferences.get("integrations") or [] if i]

        query = (
            select(Template)
            .where(
                Template.is_public.is_(True),
                Template.id.not_in(ledger.owned_template_ids_query(user_id)),
            )
            .order_by(
                Template.download_count.desc(),
                Template.view_count.desc(),
                Template.created_at.desc(),
                Template.id.desc(),
            )
        )
        if max_price is not None:
            query = query.where(Template.price <= max_price)
        if not integrations:
            query = query.limit(limit)
        result = await db.execute(query)
        candidates = result.scalars().all()

        # Re-check with the same ownership predicate
        owned = await ledger.owned_template_ids(db, user_id)
        leaked = [t.id for t in candidates if t.id in owned]
        if leaked:
            logger.warning(f"Owned templates {leaked} slipped into recommendations for {user_id}")
        templates = [template_to_client(t, purchased=False) for t in candidates if t.id not in owned]

        if integrations:
            # Stable sort: popularity order holds within each group
            templates.sort(key=lambda t: not uses_integrations(t["workflowDetails"]["apps"], integrations))
            templates = templates[:limit]
        return templates
