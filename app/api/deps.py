# api/deps.py - Shared request dependencies
# ============================================================================

from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.models.session import UserSession
from app.models.user import User
from app.services.auth import AuthService

security = HTTPBearer(auto_error=False)
auth_service = AuthService()


def session_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return request.client.host if request.client else None


async def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Tuple[User, UserSession]:
    token = session_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    authenticated = await auth_service.authenticate(db, token)
    if not authenticated:
        raise HTTPException(status_code=401, detail="Session expired or invalid")
    return authenticated


async def get_current_user(
    authenticated: Tuple[User, UserSession] = Depends(get_current_session),
) -> User:
    return authenticated[0]


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    token = session_token(request, credentials)
    if not token:
        return None
    authenticated = await auth_service.authenticate(db, token)
    return authenticated[0] if authenticated else None


async def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user
