"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.

Attributes are snake_case in Python and camelCase on the wire.
"""
import re
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from app.config import settings

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def _check_username(value: str) -> str:
    if not settings.min_username_length <= len(value) <= settings.max_username_length:
        raise ValueError(
            f"Username must be {settings.min_username_length}-"
            f"{settings.max_username_length} characters"
        )
    if not USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers, and underscores")
    if value.lower() in settings.reserved_usernames:
        raise ValueError("Username is reserved")
    return value


def _check_avatar_url(value: str) -> str:
    if len(value) > settings.max_avatar_url_length:
        raise ValueError(
            f"Avatar URL cannot exceed {settings.max_avatar_url_length} characters"
        )
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Avatar URL must be an absolute http(s) URL")
    return value


class _ProfileFields(CamelModel):
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def _display_name_length(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > settings.max_display_name_length:
            raise ValueError(
                f"Name cannot exceed {settings.max_display_name_length} characters"
            )
        return value

    @field_validator("bio")
    @classmethod
    def _bio_length(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > settings.max_bio_length:
            raise ValueError(f"Bio cannot exceed {settings.max_bio_length} characters")
        return value

    @field_validator("avatar_url")
    @classmethod
    def _avatar_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value) if value else value


# ──────────────────────────── Users ───────────────────────────────────────

class UserCreate(_ProfileFields):
    auth_user_id: str = Field(..., min_length=1, max_length=100)
    username: str

    @field_validator("username")
    @classmethod
    def _username(cls, value: str) -> str:
        return _check_username(value)


class UserUpdate(_ProfileFields):
    username: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _username(cls, value: Optional[str]) -> Optional[str]:
        return _check_username(value) if value is not None else value


class UserResponse(CamelModel):
    id: str
    auth_user_id: str
    username: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UserBatchRequest(CamelModel):
    user_ids: list[str] = Field(..., min_length=1, max_length=100)

    @field_validator("user_ids")
    @classmethod
    def _non_empty_ids(cls, value: list[str]) -> list[str]:
        for user_id in value:
            if not user_id or len(user_id) > 100:
                raise ValueError(
                    "Each userId must be a non-empty string with max 100 characters"
                )
        return value


class UserBatchResponse(CamelModel):
    users: list[UserResponse]


# ──────────────────────────── Pagination ──────────────────────────────────

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    has_more: bool


class UserListResponse(CamelModel):
    users: list[UserResponse]
    pagination: Pagination


# ──────────────────────────── Relationships ───────────────────────────────

class FollowAccepted(CamelModel):
    """Body of the 202 returned before any background work has run."""
    message: str
    status: str = "processing"
    follower_id: str
    following_id: str


class FollowersPage(CamelModel):
    followers: list[UserResponse]
    pagination: Pagination


class FollowingPage(CamelModel):
    following: list[UserResponse]
    pagination: Pagination
