# services/assistant.py - AI Response Resolver
# ============================================================================
#
# Stages, first applicable wins:
#   learned response -> disclosure guard -> workflow JSON -> keyword guide
#   (if confident) -> external LLM -> static fallback

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import LLMUnavailableError
from app.core.store import TransientStore, get_store
from app.models.chat import InteractionType
from app.models.user import User
from app.schemas.ai import AskRequest, ChatTurn
from app.services import heuristics
from app.services.learning import InteractionLog
from app.services.llm import LLMClient, build_system_prompt
from app.services.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

HEURISTIC_SHORT_CIRCUIT = 0.8
LLM_CONFIDENCE = 0.8
STATIC_CONFIDENCE = 0.3
CONVERSATION_KEY = "conversation:{}"
REMEMBERED_QUESTIONS = 5


class Source:
    LEARNED = "learned"
    SECURITY_REFUSAL = "security_refusal"
    TEMPLATE_VALIDATION = "template_validation"
    SMART_FALLBACK = "smart_fallback"
    LLM = "llm"
    FALLBACK = "fallback"


@dataclass
class Resolution:
    response: str
    source: str
    confidence: Optional[float]
    interaction_type: str
    logged_question: Optional[str] = None
    interaction_id: Optional[int] = None

    def as_response(self) -> dict:
        return {
            "response": self.response,
            "source": self.source,
            "confidence": self.confidence,
            "interactionId": self.interaction_id,
        }


class AssistantService:
    def __init__(
        self,
        store: Optional[TransientStore] = None,
        llm: Optional[LLMClient] = None,
        interactions: Optional[InteractionLog] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self._store = store
        self.llm = llm
        self.interactions = interactions or InteractionLog()
        self.limiter = limiter or SlidingWindowRateLimiter(
            limit=lambda: settings.ai_rate_limit,
            window_seconds=lambda: settings.AI_RATE_WINDOW_SECONDS,
            namespace="ai",
        )

    @property
    def store(self) -> TransientStore:
        return self._store or get_store()

    def llm_client(self) -> LLMClient:
        # Built per call so a key configured after import is picked up
        return self.llm or LLMClient()

    async def ask(self, db: AsyncSession, user: User, request: AskRequest) -> Resolution:
        if len(request.prompt) > settings.AI_MAX_PROMPT_LENGTH:
            raise HTTPException(status_code=400, detail="Prompt is too long")

        await self.enforce_rate_limit(user.id)

        context = request.template_context
        template_id = context.template_id if context else None
        template_label = (context.template_name or template_id) if context else None

        history = list(request.history)
        if not history:
            # Same shape a client sends: prior questions, then the current one
            history = await self._remembered_turns(user.id)
            history.append(ChatTurn(role="user", content=request.prompt))

        resolution = await self.resolve(db, request.prompt, template_id, template_label, history)

        interaction = await self.interactions.record(
            db,
            question=resolution.logged_question or request.prompt,
            response=resolution.response,
            interaction_type=resolution.interaction_type,
            user_id=user.id,
            template_id=template_id,
            confidence=resolution.confidence,
        )
        resolution.interaction_id = interaction.id
        await self._remember(user.id, request.prompt, template_id)
        logger.info(f"🧠 AI answer for {user.id} from {resolution.source}")
        return resolution

    async def enforce_rate_limit(self, user_id: str):
        if not await self.limiter.hit(user_id):
            retry_after = await self.limiter.retry_after(user_id)
            logger.warning(f"⏳ AI rate limit hit by {user_id}")
            raise HTTPException(
                status_code=429,
                detail="Too many AI requests, please wait a moment",
                headers={"Retry-After": str(retry_after)},
            )

    async def resolve(
        self,
        db: AsyncSession,
        prompt: str,
        template_id: Optional[str] = None,
        template_label: Optional[str] = None,
        history: Optional[List[ChatTurn]] = None,
    ) -> Resolution:
        history = history or []

        learned = await self.interactions.find_learned_response(db, prompt, template_id)
        if learned:
            return Resolution(learned.response, Source.LEARNED, learned.confidence,
                              InteractionType.LEARNED_RESPONSE)

        if heuristics.is_disclosure_attempt(prompt):
            logger.warning("Refused an instruction disclosure attempt")
            return Resolution(heuristics.REFUSAL_RESPONSE, Source.SECURITY_REFUSAL, 1.0,
                              InteractionType.SECURITY_REFUSAL)

        latest = history[-1].content if history else prompt
        if heuristics.parse_workflow_payload(latest) is not None:
            return Resolution(heuristics.ONBOARDING_RESPONSE, Source.TEMPLATE_VALIDATION, 1.0,
                              InteractionType.JSON_VALIDATION,
                              logged_question="JSON template provided")

        guide, confidence = heuristics.smart_fallback(prompt, template_id, history)
        if confidence > HEURISTIC_SHORT_CIRCUIT:
            return Resolution(guide, Source.SMART_FALLBACK, confidence, InteractionType.SMART_FALLBACK)

        llm = self.llm_client()
        if not llm.enabled:
            return Resolution(guide, Source.SMART_FALLBACK, confidence, InteractionType.SMART_FALLBACK)

        system_prompt = build_system_prompt(template_label, heuristics.conversation_summary(history))
        try:
            answer = await llm.complete(system_prompt, prompt)
        except LLMUnavailableError as e:
            logger.warning(f"⚠️ LLM stage failed, using static fallback: {e}")
            return Resolution(heuristics.STATIC_FALLBACK_RESPONSE, Source.FALLBACK, STATIC_CONFIDENCE,
                              InteractionType.FALLBACK)

        await self.interactions.learn_from_interaction(db, template_id, prompt, successful=True)
        return Resolution(answer, Source.LLM, LLM_CONFIDENCE, InteractionType.LLM)

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    async def _remembered_turns(self, user_id: str) -> List[ChatTurn]:
        state = await self.store.get(CONVERSATION_KEY.format(user_id)) or {}
        return [ChatTurn(role="user", content=q) for q in state.get("questions", [])]

    async def _remember(self, user_id: str, prompt: str, template_id: Optional[str]):
        key = CONVERSATION_KEY.format(user_id)
        state = await self.store.get(key) or {"questions": [], "interactions": 0}
        state["questions"] = (state.get("questions", []) + [prompt[:200]])[-REMEMBERED_QUESTIONS:]
        state["interactions"] = state.get("interactions", 0) + 1
        state["templateId"] = template_id
        ttl = int(timedelta(hours=settings.CONVERSATION_TTL_HOURS).total_seconds())
        await self.store.set(key, state, ttl)

    async def conversation_state(self, user_id: str) -> dict:
        return await self.store.get(CONVERSATION_KEY.format(user_id)) or {}

    async def reset_conversation(self, user_id: str):
        await self.store.delete(CONVERSATION_KEY.format(user_id))
