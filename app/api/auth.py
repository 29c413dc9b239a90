# api/auth.py - GitHub login, logout and profile routes
# ============================================================================

import logging
from typing import Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import auth_service, client_ip, get_current_session, get_current_user
from app.core.config import settings
from app.core.database import get_db
from app.core.errors import OAuthError
from app.models.session import UserSession
from app.models.user import User
from app.schemas.auth import ProfileResponse, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(f"{settings.FRONTEND_URL}/auth/error?{urlencode({'error': code})}", status_code=302)


@router.get("/github")
async def github_login():
    """Start the GitHub OAuth flow"""
    if not settings.GITHUB_CLIENT_ID:
        return _error_redirect("oauth_not_configured")
    return RedirectResponse(await auth_service.begin_github_login(), status_code=302)


@router.get("/github/callback")
async def github_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    try:
        user, user_session, token = await auth_service.complete_github_login(
            db,
            code=code,
            state=state,
            error=error,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        await db.commit()
    except OAuthError as e:
        logger.warning(f"❌ GitHub OAuth failed: {e}")
        await db.rollback()
        return _error_redirect(e.code)
    except SQLAlchemyError:
        logger.exception("❌ Could not persist GitHub login")
        await db.rollback()
        return _error_redirect("database_error")
    except Exception:
        logger.exception("❌ GitHub OAuth callback crashed")
        await db.rollback()
        return _error_redirect("oauth_callback_failed")

    query = urlencode({
        "success": "true",
        "userId": user.id,
        "userName": user.name or "",
        "userEmail": user.email or "",
    })
    response = RedirectResponse(f"{settings.FRONTEND_URL}/auth/success?{query}", status_code=302)
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        token,
        max_age=settings.SESSION_TTL_HOURS * 3600,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    return response


@router.post("/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    closed = await auth_service.invalidate_sessions(db, current_user.id)
    await db.commit()
    logger.info(f"👋 Logged out {current_user.id} ({closed} sessions closed)")
    response = JSONResponse({"success": True})
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return response


@router.get("/profile", response_model=ProfileResponse)
async def profile(authenticated: Tuple[User, UserSession] = Depends(get_current_session)):
    user, user_session = authenticated
    return ProfileResponse(
        user=UserResponse.model_validate(user),
        session_expires_at=user_session.expires_at,
    )
