# schemas/auth.py - Authentication Schemas
# ============================================================================
from datetime import datetime
from pydantic import BaseModel, EmailStr
from typing import Optional


class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    name: Optional[str]
    avatar_url: Optional[str]
    role: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ProfileResponse(BaseModel):
    user: UserResponse
    session_expires_at: datetime


class GitHubProfile(BaseModel):
    """The sanitized subset of the GitHub account we keep."""
    github_id: str
    login: Optional[str] = None
    name: Optional[str] = None
    email: EmailStr
    avatar_url: Optional[str] = None
