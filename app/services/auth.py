# services/auth.py - GitHub OAuth and Session Authentication
# ============================================================================

import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx
import jwt
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.errors import OAuthError
from app.core.store import TransientStore, get_store
from app.models.session import UserSession
from app.models.user import User, UserRole
from app.schemas.auth import GitHubProfile

logger = logging.getLogger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

STATE_KEY = "oauth_state:{}"
MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 320
MAX_AVATAR_LENGTH = 500


def sanitize_profile(github_user: dict, email: str) -> GitHubProfile:
    name = (github_user.get("name") or github_user.get("login") or "").strip()[:MAX_NAME_LENGTH]
    avatar = (github_user.get("avatar_url") or "")[:MAX_AVATAR_LENGTH]
    return GitHubProfile(
        github_id=str(github_user["id"]),
        login=github_user.get("login"),
        name=name or None,
        email=email.strip().lower()[:MAX_EMAIL_LENGTH],
        avatar_url=avatar or None,
    )


def pick_primary_email(emails: list) -> Optional[str]:
    for entry in emails or []:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
            return entry.get("email")
    return None


class AuthService:
    def __init__(self, store: Optional[TransientStore] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._store = store
        self.transport = transport

    @property
    def store(self) -> TransientStore:
        return self._store or get_store()

    # ------------------------------------------------------------------
    # GitHub OAuth
    # ------------------------------------------------------------------

    async def begin_github_login(self) -> str:
        """Issue a single-use CSRF state and return the authorize URL."""
        state = secrets.token_hex(32)
        await self.store.set(
            STATE_KEY.format(state),
            {"created_at": utcnow().isoformat()},
            settings.OAUTH_STATE_TTL_SECONDS,
        )
        query = urlencode({
            "client_id": settings.GITHUB_CLIENT_ID,
            "redirect_uri": settings.GITHUB_REDIRECT_URI,
            "scope": "user:email",
            "state": state,
            "allow_signup": "true",
        })
        return f"{GITHUB_AUTHORIZE_URL}?{query}"

    async def complete_github_login(
        self,
        db: AsyncSession,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, UserSession, str]:
        if error:
            raise OAuthError("github_oauth_denied", error)
        if not code:
            raise OAuthError("missing_auth_code")
        if not state or await self.store.pop(STATE_KEY.format(state)) is None:
            raise OAuthError("invalid_state")

        async with self._client() as client:
            access_token = await self._exchange_code(client, code)
            profile = await self._fetch_profile(client, access_token)

        try:
            user = await self.upsert_github_user(db, profile)
            user_session, token = await self.create_session(db, user, ip_address, user_agent)
        except SQLAlchemyError as e:
            raise OAuthError("database_error", str(e))

        logger.info(f"🔐 GitHub login for {user.id}")
        return user, user_session, token

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.OAUTH_TIMEOUT_SECONDS, transport=self.transport)

    async def _exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        try:
            response = await client.post(
                GITHUB_TOKEN_URL,
                data={
                    "client_id": settings.GITHUB_CLIENT_ID,
                    "client_secret": settings.GITHUB_CLIENT_SECRET,
                    "code": code,
                    "redirect_uri": settings.GITHUB_REDIRECT_URI,
                },
                headers={"Accept": "application/json"},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OAuthError("token_exchange_failed", str(e))

        if response.status_code != 200 or not data.get("access_token"):
            raise OAuthError("token_exchange_failed", data.get("error_description") or data.get("error") or "")
        return data["access_token"]

    async def _fetch_profile(self, client: httpx.AsyncClient, access_token: str) -> GitHubProfile:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "template-marketplace",
        }
        try:
            user_response = await client.get(f"{GITHUB_API_URL}/user", headers=headers)
            self._check_github_response(user_response)
            github_user = user_response.json()

            emails_response = await client.get(f"{GITHUB_API_URL}/user/emails", headers=headers)
            self._check_github_response(emails_response)
            emails = emails_response.json()
        except httpx.HTTPError as e:
            raise OAuthError("oauth_callback_failed", str(e))
        except ValueError as e:
            raise OAuthError("oauth_callback_failed", f"bad JSON from GitHub: {e}")

        email = pick_primary_email(emails)
        if not email:
            raise OAuthError("no_verified_email")
        if not isinstance(github_user, dict) or "id" not in github_user:
            raise OAuthError("oauth_callback_failed", "GitHub user payload has no id")
        return sanitize_profile(github_user, email)

    def _check_github_response(self, response: httpx.Response):
        if response.status_code == 403:
            raise OAuthError("github_api_rate_limit")
        if response.status_code != 200:
            raise OAuthError("oauth_callback_failed", f"GitHub API returned {response.status_code}")

    async def upsert_github_user(self, db: AsyncSession, profile: GitHubProfile) -> User:
        result = await db.execute(select(User).where(User.email == profile.email))
        user = result.scalar_one_or_none()

        if not user:
            result = await db.execute(select(User).where(User.github_id == profile.github_id))
            user = result.scalar_one_or_none()

        if user:
            user.name = profile.name or user.name
            user.avatar_url = profile.avatar_url or user.avatar_url
            user.github_id = user.github_id or profile.github_id
            user.email = user.email or profile.email
        else:
            user = User(
                id=f"github_{profile.github_id}",
                email=profile.email,
                name=profile.name,
                avatar_url=profile.avatar_url,
                github_id=profile.github_id,
                role=UserRole.USER,
                is_active=True,
            )
            db.add(user)
            logger.info(f"👤 Created user {user.id}")

        user.last_login_at = utcnow()
        await db.flush()
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        db: AsyncSession,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[UserSession, str]:
        """Start a session for ``user``, superseding any earlier ones."""
        await self.invalidate_sessions(db, user.id)
        user_session = UserSession(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            expires_at=utcnow() + timedelta(hours=settings.SESSION_TTL_HOURS),
            is_active=True,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
        )
        db.add(user_session)
        await db.flush()
        return user_session, self.create_session_token(user_session)

    def create_session_token(self, user_session: UserSession) -> str:
        payload = {
            "sid": user_session.id,
            "sub": user_session.user_id,
            "exp": user_session.expires_at,
        }
        return jwt.encode(payload, settings.SECRET_KEY, algorithm="HS256")

    async def authenticate(self, db: AsyncSession, token: str) -> Optional[Tuple[User, UserSession]]:
        """Resolve a session token to its user; the session row always has the final say."""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
        except jwt.PyJWTError:
            return None

        user_session = await db.get(UserSession, payload.get("sid"))
        if not user_session or user_session.user_id != payload.get("sub"):
            return None
        if not user_session.is_valid():
            return None

        user = await db.get(User, user_session.user_id)
        if not user or not user.is_active:
            return None
        return user, user_session

    async def invalidate_sessions(self, db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .values(is_active=False)
        )
        return result.rowcount
