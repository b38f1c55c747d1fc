"""
Profile endpoints:
  POST   /users                  — create a profile (service token)
  GET    /users                  — list / search profiles
  POST   /users/batch            — fetch several profiles by id
  GET    /users/auth/{auth_id}   — fetch a profile by auth-service id
  GET    /users/{id}             — fetch a profile (read-through cache)
  PUT    /users/{id}             — update own profile
  DELETE /users/{id}             — delete own profile and its edges
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Principal, get_current_principal, require_self, verify_service_token
from app.clients.redis_client import ProfileCache, get_profile_cache
from app.config import settings
from app.database import get_db
from app.schemas import (
    Pagination,
    UserBatchRequest,
    UserBatchResponse,
    UserCreate,
    UserListResponse,
    UserResponse,
    UserUpdate,
)
from app.services import profile_service

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    db: AsyncSession = Depends(get_db),
    service: str = Depends(verify_service_token),
):
    """
    Provision a profile for an auth-service identity.

    Normally profiles arrive through the user-created event stream; this is
    the synchronous path for services that need the row to exist right away.
    """
    with tracer.start_as_current_span("create_user"):
        user = await profile_service.create_user(db, body)
        logger.info("Profile %s provisioned by %s", user.id, service)
        return user


@router.get("", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    search: Optional[str] = Query(None, min_length=2, max_length=100),
    db: AsyncSession = Depends(get_db),
):
    users, total = await profile_service.list_users(db, page, limit, search)
    return UserListResponse(
        users=[UserResponse.model_validate(u) for u in users],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            has_more=(page - 1) * limit + len(users) < total,
        ),
    )


@router.post("/batch", response_model=UserBatchResponse)
async def batch_users(body: UserBatchRequest, db: AsyncSession = Depends(get_db)):
    users = await profile_service.get_users(db, body.user_ids)
    return UserBatchResponse(users=[UserResponse.model_validate(u) for u in users])


@router.get("/auth/{auth_user_id}", response_model=UserResponse)
async def get_user_by_auth_id(auth_user_id: str, db: AsyncSession = Depends(get_db)):
    return await profile_service.get_user_by_auth_id(db, auth_user_id)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    cache: ProfileCache = Depends(get_profile_cache),
):
    cached = await cache.get_profile(user_id)
    if cached is not None:
        return UserResponse.model_validate(cached)

    user = await profile_service.get_user(db, user_id)
    body = UserResponse.model_validate(user)
    await cache.set_profile(user_id, body.model_dump(mode="json", by_alias=True))
    return body


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    body: UserUpdate,
    db: AsyncSession = Depends(get_db),
    cache: ProfileCache = Depends(get_profile_cache),
    principal: Principal = Depends(get_current_principal),
):
    require_self(user_id, principal)
    with tracer.start_as_current_span("update_user"):
        return await profile_service.update_user(db, cache, user_id, body)


@router.delete("/{user_id}", response_model=UserResponse)
async def delete_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    cache: ProfileCache = Depends(get_profile_cache),
    principal: Principal = Depends(get_current_principal),
):
    require_self(user_id, principal)
    with tracer.start_as_current_span("delete_user"):
        return await profile_service.delete_user(db, cache, user_id)
