# main.py - Template Marketplace API
# ============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api import ai, auth, payments, templates
from app.core.config import settings
from app.core.database import close_db, init_db
from app.core.errors import (
    AlreadyOwnedError,
    already_owned_handler,
    build_unhandled_exception_handler,
    validation_exception_handler,
)
from app.core.store import get_store
from app.tasks.maintenance import start_maintenance

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Missing production secrets must stop the process here
    settings.validate_for_startup()
    await init_db()
    logger.info("✅ Database initialized")
    if not settings.llm_enabled:
        logger.warning("⚠️ GROQ_API_KEY not set, AI answers come from learned and built-in guides only")

    maintenance = start_maintenance()
    yield

    if maintenance:
        maintenance.cancel()
        try:
            await maintenance
        except asyncio.CancelledError:
            pass
    await get_store().close()
    await close_db()


app = FastAPI(
    title="Template Marketplace API",
    description="Workflow template marketplace with checkout and an AI setup assistant",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def add_coop_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin-allow-popups"
    return response

app.add_exception_handler(AlreadyOwnedError, already_owned_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, build_unhandled_exception_handler(not settings.is_production))

app.include_router(auth.router)
app.include_router(payments.router)
app.include_router(templates.router)
app.include_router(ai.router)

# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/health")
async def health():
    return {"status": "healthy"}

@app.get("/")
async def root():
    return {"message": "Template Marketplace API", "version": "1.0.0"}
