"""
Social graph endpoints:
  POST /users/{id}/follow     — caller follows {id}        (202, async)
  POST /users/{id}/unfollow   — caller unfollows {id}      (202, async)
  GET  /users/{id}/followers  — who follows {id}
  GET  /users/{id}/following  — who {id} follows

Follow and unfollow answer before touching the store: a 202 only means the
request was well-formed. Clients reconcile through the GET endpoints.
"""
from fastapi import APIRouter, Depends, Query, status

from app.auth import Principal, get_current_principal
from app.config import settings
from app.schemas import FollowAccepted, FollowersPage, FollowingPage
from app.services.follow_orchestrator import FollowOrchestrator, get_follow_orchestrator

router = APIRouter()


@router.post(
    "/{user_id}/follow",
    response_model=FollowAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def follow_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: FollowOrchestrator = Depends(get_follow_orchestrator),
):
    return orchestrator.request_follow(principal.user_id, user_id)


@router.post(
    "/{user_id}/unfollow",
    response_model=FollowAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def unfollow_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: FollowOrchestrator = Depends(get_follow_orchestrator),
):
    return orchestrator.request_unfollow(principal.user_id, user_id)


@router.get("/{user_id}/followers", response_model=FollowersPage)
async def list_followers(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    orchestrator: FollowOrchestrator = Depends(get_follow_orchestrator),
):
    return await orchestrator.list_followers(user_id, page, limit)


@router.get("/{user_id}/following", response_model=FollowingPage)
async def list_following(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    orchestrator: FollowOrchestrator = Depends(get_follow_orchestrator),
):
    return await orchestrator.list_following(user_id, page, limit)
