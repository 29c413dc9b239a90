# api/ai.py - AI assistant routes
# ============================================================================

import csv
import logging
from io import StringIO

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_admin_user, get_current_user
from app.core.database import get_db, utcnow
from app.models.user import User
from app.schemas.ai import AskRequest, AskResponse, FeedbackRequest, SetupInstructionsRequest
from app.services.assistant import AssistantService
from app.services.learning import EXPORT_FIELDS
from app.services.setup_guide import generate_setup_instructions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ai"])
assistant_service = AssistantService()


@router.post("/ai/ask", response_model=AskResponse)
@router.post("/ask-ai", response_model=AskResponse, include_in_schema=False)
async def ask(
    body: AskRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    resolution = await assistant_service.ask(db, current_user, body)
    await db.commit()
    return resolution.as_response()


@router.post("/ai/feedback")
async def feedback(
    body: FeedbackRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    interaction = await assistant_service.interactions.record_feedback(
        db, current_user.id, body.interaction_id, body.helpful
    )
    if not interaction:
        raise HTTPException(status_code=404, detail="Interaction not found")
    await db.commit()
    return {"success": True, "learningScore": interaction.learning_score}


@router.post("/ai/reset-conversation")
async def reset_conversation(current_user: User = Depends(get_current_user)):
    await assistant_service.reset_conversation(current_user.id)
    return {"success": True}


@router.get("/ai/learning-stats")
async def learning_stats(
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await assistant_service.interactions.learning_stats(db)


@router.get("/ai/template-intelligence/{template_id}")
async def template_intelligence(
    template_id: str,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await assistant_service.interactions.template_report(db, template_id)


@router.post("/generate-setup-instructions")
async def setup_instructions(
    body: SetupInstructionsRequest,
    current_user: User = Depends(get_current_user),
):
    await assistant_service.enforce_rate_limit(current_user.id)
    result = await generate_setup_instructions(body.workflow, body.template_id, assistant_service.llm_client())
    logger.info(f"📘 Setup instructions for {body.template_id} from {result['source']}")
    return result


@router.get("/ai/performance-analytics")
async def performance_analytics(
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await assistant_service.interactions.performance_analytics(db, days)


@router.get("/ai/export-conversations/{template_id}")
async def export_conversations(
    template_id: str,
    format: str = Query("json", pattern="^(json|csv)$"),
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await assistant_service.interactions.export_conversations(db, template_id, days)
    logger.info(f"📤 Exported {len(rows)} conversations for {template_id} as {format}")

    if format == "csv":
        buffer = StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS)
        writer.writeheader()
        writer.writerows(rows)
        filename = f"{template_id}_conversations_{days}days.csv"
        return Response(
            content=buffer.getvalue(),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return {
        "templateId": template_id,
        "timeframeDays": days,
        "totalConversations": len(rows),
        "exportedAt": utcnow().isoformat(),
        "conversations": rows,
    }


@router.get("/ai/health")
async def ai_health():
    return {
        "status": "healthy",
        "llmConfigured": assistant_service.llm_client().enabled,
        "stateBackend": assistant_service.store.backend,
    }
