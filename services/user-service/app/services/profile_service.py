"""
Profile CRUD against the users table.

Uniqueness violations surface as ConflictError, missing rows as
NotFoundError; the routers turn both into 409 / 404.
"""
import logging
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.redis_client import ProfileCache, followers_key, following_key, profile_key
from app.errors import ConflictError, NotFoundError
from app.models import Follow, User
from app.schemas import UserCreate, UserUpdate

logger = logging.getLogger(__name__)


async def _ensure_unique(
    db: AsyncSession,
    username: Optional[str] = None,
    auth_user_id: Optional[str] = None,
    exclude_id: Optional[str] = None,
) -> None:
    if username is not None:
        stmt = select(User.id).where(User.username == username)
        if exclude_id:
            stmt = stmt.where(User.id != exclude_id)
        if await db.scalar(stmt):
            raise ConflictError(f"Username '{username}' already taken")
    if auth_user_id is not None:
        if await db.scalar(select(User.id).where(User.auth_user_id == auth_user_id)):
            raise ConflictError(f"Profile for auth user '{auth_user_id}' already exists")


async def create_user(db: AsyncSession, body: UserCreate) -> User:
    await _ensure_unique(db, username=body.username, auth_user_id=body.auth_user_id)

    user = User(
        auth_user_id=body.auth_user_id,
        username=body.username,
        display_name=body.display_name,
        bio=body.bio,
        avatar_url=body.avatar_url,
    )
    db.add(user)
    try:
        await db.flush()  # get id before commit
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same username/auth id
        raise ConflictError("Username or auth user already exists") from exc
    await db.refresh(user)  # load server-generated timestamps

    logger.info("Created user %s (id=%s)", user.username, user.id)
    return user


async def get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_user_by_auth_id(db: AsyncSession, auth_user_id: str) -> User:
    user = await db.scalar(select(User).where(User.auth_user_id == auth_user_id))
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_users(db: AsyncSession, user_ids: list[str]) -> list[User]:
    rows = await db.scalars(select(User).where(User.id.in_(list(set(user_ids)))))
    return list(rows)


async def list_users(
    db: AsyncSession, page: int, limit: int, search: Optional[str] = None
) -> tuple[list[User], int]:
    """Newest profiles first; `search` matches username or display name."""
    count_stmt = select(func.count()).select_from(User)
    page_stmt = select(User)
    if search:
        # autoescape keeps % and _ in the search term literal
        matches = or_(
            User.username.icontains(search, autoescape=True),
            User.display_name.icontains(search, autoescape=True),
        )
        count_stmt = count_stmt.where(matches)
        page_stmt = page_stmt.where(matches)

    total = await db.scalar(count_stmt)
    rows = await db.scalars(
        page_stmt
        .order_by(User.created_at.desc(), User.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(rows), total or 0


async def update_user(
    db: AsyncSession, cache: ProfileCache, user_id: str, body: UserUpdate
) -> User:
    user = await get_user(db, user_id)
    changes = body.model_dump(exclude_unset=True)
    if "username" in changes and changes["username"] is None:
        changes.pop("username")
    if changes.get("username") not in (None, user.username):
        await _ensure_unique(db, username=changes["username"], exclude_id=user_id)

    for field, value in changes.items():
        setattr(user, field, value)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConflictError("Username already taken") from exc
    await db.refresh(user)
    # Commit before invalidating so a concurrent read cannot re-cache the old row
    await db.commit()

    await cache.invalidate(profile_key(user_id))
    logger.info("Updated user %s fields=%s", user_id, sorted(changes))
    return user


async def delete_user(db: AsyncSession, cache: ProfileCache, user_id: str) -> User:
    """Hard delete; the user's edges go with it in the same transaction."""
    user = await get_user(db, user_id)
    await db.execute(
        delete(Follow).where(
            or_(Follow.follower_id == user_id, Follow.following_id == user_id)
        )
    )
    await db.delete(user)
    await db.commit()

    for key in (profile_key(user_id), followers_key(user_id), following_key(user_id)):
        await cache.invalidate(key)
    logger.info("Deleted user %s (id=%s)", user.username, user_id)
    return user
