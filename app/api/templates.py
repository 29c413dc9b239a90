# api/templates.py - Catalog, download and recommendation routes
# ============================================================================

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_optional_user
from app.core.database import get_db
from app.models.user import User
from app.schemas.catalog import PreferencesRequest
from app.services import ledger
from app.services.catalog import CatalogService, load_workflow, template_to_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["templates"])
catalog_service = CatalogService()


@router.get("/templates")
async def list_templates(
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    templates = await catalog_service.list_public(db, current_user.id if current_user else None)
    return {"templates": templates, "count": len(templates)}


@router.get("/templates/{template_id}")
async def get_template(
    template_id: int,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    template = await catalog_service.get_template(db, template_id)
    if not template or (not template.is_public and (not current_user or template.creator_id != current_user.id)):
        raise HTTPException(status_code=404, detail="Template not found")

    data = template_to_client(template)
    if current_user:
        data["purchased"] = await ledger.is_owned(db, current_user.id, template.id)
        data["paymentPending"] = (
            not data["purchased"]
            and await ledger.has_pending_purchase(db, current_user.id, template.id)
        )
    return {"template": data}


@router.post("/templates/{template_id}/view")
async def record_view(template_id: int, db: AsyncSession = Depends(get_db)):
    if not await catalog_service.record_view(db, template_id):
        raise HTTPException(status_code=404, detail="Template not found")
    await db.commit()
    return {"success": True}


@router.get("/templates/{template_id}/download")
async def download_template(
    template_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    template = await catalog_service.get_template(db, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    is_creator = template.creator_id is not None and template.creator_id == current_user.id
    if not is_creator and not await ledger.is_owned(db, current_user.id, template.id):
        raise HTTPException(status_code=403, detail="Purchase required to download this template")

    logger.info(f"⬇️ Template {template.id} downloaded by {current_user.id}")
    return {
        "templateId": template.id,
        "name": template.name,
        "workflow": load_workflow(template.workflow),
    }


@router.post("/recommendations/preferences")
async def save_preferences(
    request: PreferencesRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    preferences = request.preferences.model_dump(by_alias=True)
    current_user.preferences = preferences
    db.add(current_user)
    await db.commit()
    logger.info(f"🎯 Preferences saved for {current_user.id}")
    return {"success": True, "message": "Preferences saved", "preferences": preferences}


@router.get("/recommendations/preferences")
async def get_preferences(current_user: User = Depends(get_current_user)):
    return {"preferences": current_user.preferences or {}}


@router.get("/recommendations")
async def recommendations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    preferences = current_user.preferences or {}
    templates = await catalog_service.recommendations(db, current_user.id, preferences=preferences)
    return {"templates": templates, "count": len(templates), "personalized": bool(preferences)}
