# services/learning.py - Interaction log, learned responses and template intelligence
# ============================================================================

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func, case, literal, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.models.chat import ChatInteraction, InteractionType, TemplateIntelligence
from app.services.heuristics import categorize, recommendations_for

logger = logging.getLogger(__name__)

LEARNED_MIN_USES = 2
LEARNED_MIN_HELPFULNESS = 0.7
LEARNED_CONFIDENCE_CAP = 0.95
LEARNABLE_TYPES = (InteractionType.LLM, InteractionType.LEARNED_RESPONSE)

GENERAL_TEMPLATE_KEY = "general_chat"
MAX_TRACKED_QUESTIONS = 50
TOP_TEMPLATES_LIMIT = 10
ENGAGED_MIN_INTERACTIONS = 5

# Export column order, also the CSV header
EXPORT_FIELDS = [
    "id", "templateId", "question", "response", "userId", "createdAt",
    "interactionType", "category", "learningScore", "helpful",
]


@dataclass
class LearnedResponse:
    response: str
    confidence: float
    uses: int
    helpfulness: float


def learning_score_for(interaction_type: str) -> int:
    if interaction_type == InteractionType.LEARNED_RESPONSE:
        return 10
    if interaction_type == InteractionType.LLM:
        return 5
    return 3


def learned_confidence(uses: int, helpfulness: float) -> float:
    return round(min(LEARNED_CONFIDENCE_CAP, helpfulness * (0.6 + 0.1 * uses)), 3)


def interaction_to_export(interaction: ChatInteraction) -> Dict[str, Any]:
    created = interaction.created_at
    return {
        "id": interaction.id,
        "templateId": interaction.template_id,
        "question": interaction.question,
        "response": interaction.response,
        "userId": interaction.user_id,
        "createdAt": created.isoformat() if created else None,
        "interactionType": interaction.interaction_type,
        "category": interaction.category,
        "learningScore": interaction.learning_score,
        "helpful": interaction.helpful,
    }


def _template_clause(template_id: Optional[str]):
    if template_id is None:
        return ChatInteraction.template_id.is_(None)
    return ChatInteraction.template_id == template_id


class InteractionLog:

    async def find_learned_response(
        self, db: AsyncSession, question: str, template_id: Optional[str]
    ) -> Optional[LearnedResponse]:
        cutoff = utcnow() - timedelta(days=settings.LEARNED_LOOKBACK_DAYS)
        uses = func.count(ChatInteraction.id)
        helpfulness = func.avg(case((ChatInteraction.helpful.is_(True), 1.0), else_=0.0))

        result = await db.execute(
            select(ChatInteraction.response, uses.label("uses"), helpfulness.label("helpfulness"))
            .where(
                func.lower(ChatInteraction.question) == func.lower(literal(question)),
                _template_clause(template_id),
                ChatInteraction.interaction_type.in_(LEARNABLE_TYPES),
                ChatInteraction.created_at >= cutoff,
            )
            .group_by(ChatInteraction.response)
            .having(uses >= LEARNED_MIN_USES, helpfulness > LEARNED_MIN_HELPFULNESS)
            .order_by(uses.desc(), helpfulness.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        score = float(row.helpfulness)
        return LearnedResponse(
            response=row.response,
            confidence=learned_confidence(row.uses, score),
            uses=row.uses,
            helpfulness=score,
        )

    async def record(
        self,
        db: AsyncSession,
        question: str,
        response: str,
        interaction_type: str,
        user_id: Optional[str] = None,
        template_id: Optional[str] = None,
        confidence: Optional[float] = None,
        category: Optional[str] = None,
    ) -> ChatInteraction:
        interaction = ChatInteraction(
            user_id=user_id,
            template_id=template_id,
            question=question,
            response=response,
            category=category or categorize(question),
            interaction_type=interaction_type,
            confidence=confidence,
            learning_score=learning_score_for(interaction_type),
            created_at=utcnow(),
        )
        db.add(interaction)
        await db.flush()
        return interaction

    async def record_feedback(
        self, db: AsyncSession, user_id: str, interaction_id: int, helpful: bool
    ) -> Optional[ChatInteraction]:
        interaction = await db.get(ChatInteraction, interaction_id)
        if not interaction or interaction.user_id != user_id:
            return None
        if interaction.helpful is helpful:
            return interaction

        # Undo a previous rating before applying the new one
        if interaction.helpful is True:
            interaction.learning_score -= 2
        elif interaction.helpful is False:
            interaction.learning_score += 1
        interaction.learning_score += 2 if helpful else -1
        interaction.helpful = helpful
        await db.flush()
        return interaction

    async def learn_from_interaction(
        self, db: AsyncSession, template_id: Optional[str], question: str, successful: bool = True
    ) -> TemplateIntelligence:
        key = template_id or GENERAL_TEMPLATE_KEY
        row = await db.get(TemplateIntelligence, key)
        if row is None:
            try:
                async with db.begin_nested():
                    row = TemplateIntelligence(
                        template_id=key,
                        total_interactions=0,
                        successful_interactions=0,
                        success_rate=0.0,
                        common_questions={},
                        category_counts={},
                    )
                    db.add(row)
            except IntegrityError:
                row = await db.get(TemplateIntelligence, key)

        questions = dict(row.common_questions or {})
        normalized = question.strip().lower()[:200]
        questions[normalized] = questions.get(normalized, 0) + 1
        if len(questions) > MAX_TRACKED_QUESTIONS:
            top = sorted(questions.items(), key=lambda item: item[1], reverse=True)
            questions = dict(top[:MAX_TRACKED_QUESTIONS])

        categories = dict(row.category_counts or {})
        category = categorize(question)
        categories[category] = categories.get(category, 0) + 1

        row.total_interactions = (row.total_interactions or 0) + 1
        if successful:
            row.successful_interactions = (row.successful_interactions or 0) + 1
        row.success_rate = round(100.0 * row.successful_interactions / row.total_interactions, 2)
        row.common_questions = questions
        row.category_counts = categories
        await db.flush()
        return row

    async def learning_stats(self, db: AsyncSession) -> Dict[str, Any]:
        result = await db.execute(
            select(ChatInteraction.interaction_type, func.count(ChatInteraction.id))
            .group_by(ChatInteraction.interaction_type)
        )
        by_type = {interaction_type: count for interaction_type, count in result.all()}

        result = await db.execute(
            select(
                func.count(ChatInteraction.id),
                func.sum(case((ChatInteraction.helpful.is_(True), 1), else_=0)),
            ).where(ChatInteraction.helpful.is_not(None))
        )
        rated, helpful = result.one()
        rated = rated or 0
        helpful = helpful or 0

        result = await db.execute(
            select(ChatInteraction.template_id, func.count(ChatInteraction.id).label("n"))
            .where(ChatInteraction.template_id.is_not(None))
            .group_by(ChatInteraction.template_id)
            .order_by(func.count(ChatInteraction.id).desc())
            .limit(5)
        )
        top_templates = [{"templateId": t, "interactions": n} for t, n in result.all()]

        learned = by_type.get(InteractionType.LEARNED_RESPONSE, 0)
        heuristic = by_type.get(InteractionType.SMART_FALLBACK, 0)
        return {
            "totalInteractions": sum(by_type.values()),
            "byType": by_type,
            "ratedInteractions": rated,
            "helpfulRatio": round(helpful / rated, 3) if rated else None,
            "learnedResponsesServed": learned,
            "llmCallsAvoided": learned + heuristic,
            "topTemplates": top_templates,
        }

    async def template_report(self, db: AsyncSession, template_id: str) -> Dict[str, Any]:
        row = await db.get(TemplateIntelligence, template_id)
        since = utcnow() - timedelta(days=7)
        result = await db.execute(
            select(func.count(ChatInteraction.id)).where(
                ChatInteraction.template_id == template_id,
                ChatInteraction.created_at >= since,
            )
        )
        recent = result.scalar() or 0

        success_rate = row.success_rate if row else 0.0
        questions = (row.common_questions or {}) if row else {}
        common = sorted(questions.items(), key=lambda item: item[1], reverse=True)[:5]
        return {
            "templateId": template_id,
            "totalInteractions": row.total_interactions if row else 0,
            "successRate": success_rate,
            "recentInteractions": recent,
            "commonQuestions": [{"question": q, "count": n} for q, n in common],
            "categories": (row.category_counts or {}) if row else {},
            "recommendations": recommendations_for(success_rate, recent) if row else [],
        }

    async def prune(self, db: AsyncSession, now=None) -> int:
        """Delete old interactions that never earned a useful learning score."""
        cutoff = (now or utcnow()) - timedelta(days=settings.PRUNE_MIN_AGE_DAYS)
        result = await db.execute(
            delete(ChatInteraction).where(
                ChatInteraction.created_at < cutoff,
                ChatInteraction.learning_score < settings.PRUNE_MAX_SCORE,
                or_(ChatInteraction.helpful.is_(None), ChatInteraction.helpful.is_(False)),
            )
        )
        if result.rowcount:
            logger.info(f"🧹 Pruned {result.rowcount} low-scoring chat interactions")
        return result.rowcount

    # ------------------------------------------------------------------
    # Admin analytics
    # ------------------------------------------------------------------

    async def performance_analytics(self, db: AsyncSession, days: int = 30) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        in_window = ChatInteraction.created_at >= since
        is_learned = case((ChatInteraction.interaction_type == InteractionType.LEARNED_RESPONSE, 1), else_=0)
        is_llm = case((ChatInteraction.interaction_type == InteractionType.LLM, 1), else_=0)

        day = func.date(ChatInteraction.created_at)
        result = await db.execute(
            select(
                day.label("day"),
                func.count(ChatInteraction.id),
                func.sum(is_learned),
                func.sum(is_llm),
                func.avg(ChatInteraction.learning_score),
            )
            .where(in_window)
            .group_by(day)
            .order_by(day.desc())
        )
        daily = [
            {
                "date": str(d),
                "total": total,
                "learnedResponses": int(learned or 0),
                "llmCalls": int(calls or 0),
                "avgEffectiveness": round(float(avg or 0), 2),
            }
            for d, total, learned, calls, avg in result.all()
        ]

        result = await db.execute(
            select(func.count(ChatInteraction.id), func.sum(is_learned), func.sum(is_llm)).where(in_window)
        )
        total, learned, calls = result.one()

        result = await db.execute(
            select(
                ChatInteraction.template_id,
                func.count(ChatInteraction.id).label("n"),
                func.count(func.distinct(ChatInteraction.user_id)),
                func.avg(ChatInteraction.learning_score),
            )
            .where(
                in_window,
                ChatInteraction.template_id.is_not(None),
                ChatInteraction.template_id != GENERAL_TEMPLATE_KEY,
            )
            .group_by(ChatInteraction.template_id)
            .order_by(func.count(ChatInteraction.id).desc(), ChatInteraction.template_id)
            .limit(TOP_TEMPLATES_LIMIT)
        )
        top_templates = [
            {
                "templateId": template_id,
                "interactions": n,
                "uniqueUsers": users,
                "avgLearningScore": round(float(avg or 0), 2),
            }
            for template_id, n, users, avg in result.all()
        ]

        per_user = (
            select(ChatInteraction.user_id, func.count(ChatInteraction.id).label("n"))
            .where(in_window, ChatInteraction.user_id.is_not(None))
            .group_by(ChatInteraction.user_id)
            .subquery()
        )
        result = await db.execute(
            select(
                func.count(per_user.c.user_id),
                func.avg(per_user.c.n),
                func.max(per_user.c.n),
                func.sum(case((per_user.c.n >= ENGAGED_MIN_INTERACTIONS, 1), else_=0)),
            )
        )
        users, avg_per_user, max_per_user, engaged = result.one()

        return {
            "dailyTrends": daily,
            "costSavings": {
                "totalInteractions": total or 0,
                "llmCalls": int(calls or 0),
                "savedLlmCalls": int(learned or 0),
            },
            "topTemplates": top_templates,
            "userEngagement": {
                "totalUsers": users or 0,
                "avgInteractionsPerUser": round(float(avg_per_user or 0), 2),
                "maxInteractionsPerUser": max_per_user or 0,
                "engagedUsers": int(engaged or 0),
            },
            "metadata": {"timeframeDays": days, "generatedAt": utcnow().isoformat()},
        }

    async def export_conversations(
        self, db: AsyncSession, template_id: str, days: int = 30
    ) -> List[Dict[str, Any]]:
        since = utcnow() - timedelta(days=days)
        result = await db.execute(
            select(ChatInteraction)
            .where(ChatInteraction.template_id == template_id, ChatInteraction.created_at >= since)
            .order_by(ChatInteraction.created_at.desc(), ChatInteraction.id.desc())
        )
        return [interaction_to_export(i) for i in result.scalars().all()]
