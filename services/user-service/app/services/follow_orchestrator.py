"""
Follow / unfollow orchestration.

Request phase (inside the HTTP handler):
  validate the two ids, schedule the background phase, answer 202.

Background phase (detached task, runs after the response is flushed):
  1. Transaction — load both participants and the existing edge, then
     insert (follow) or delete (unfollow) the edge. The statements are
     bounded by settings.follow_transaction_timeout; the COMMIT is not, so a
     commit that reached the store is never reported as a timeout.
  2. Cache — invalidate the four keys the edge affects. Each invalidation is
     attempted; failures are logged only.
  3. Broker — publish user-followed (new edges only) or user-unfollowed.

Steps after the commit are never rolled back: a failed publish leaves the
edge in place and the caches invalidated. Any failure in the background
phase ends in a dead-letter event carrying the operation, both ids and the
error; a failure to dead-letter is logged and swallowed.

A duplicate insert racing another follow for the same pair is caught through
the (follower_id, following_id) primary key and reported as the idempotent
"already exists" outcome.
"""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.kafka_producer import EventPublisher, event_publisher
from app.clients.redis_client import (
    ProfileCache,
    followers_key,
    following_key,
    profile_cache,
    relationship_keys,
)
from app.config import settings
from app.database import AsyncSessionLocal
from app.errors import ParticipantNotFound, RelationshipNotFound, RequestValidationFailed
from app.models import Follow, User
from app.schemas import FollowAccepted, FollowersPage, FollowingPage, Pagination, UserResponse
from app.tasks import BackgroundTaskSupervisor, background_tasks
from app.telemetry import (
    DEAD_LETTER_EVENTS_TOTAL,
    RELATIONSHIP_BACKGROUND_SECONDS,
    RELATIONSHIP_OPERATIONS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FollowOutcome(str, enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    REMOVED = "removed"


@dataclass
class EdgeChange:
    outcome: FollowOutcome
    follower_auth_id: Optional[str] = None
    following_auth_id: Optional[str] = None


def follow_dedup_key(follower_id: str, following_id: str) -> str:
    return f"follow-{follower_id}-{following_id}"


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class FollowOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: ProfileCache,
        publisher: EventPublisher,
        supervisor: BackgroundTaskSupervisor,
        transaction_timeout: Optional[float] = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._publisher = publisher
        self._supervisor = supervisor
        self._transaction_timeout = (
            transaction_timeout
            if transaction_timeout is not None
            else settings.follow_transaction_timeout
        )

    # ─────────────────────────── Request phase ────────────────────────────

    @staticmethod
    def _validate_ids(follower_id: Optional[str], following_id: Optional[str], verb: str) -> None:
        if not follower_id or not following_id:
            raise RequestValidationFailed("Missing required user IDs")
        if follower_id == following_id:
            raise RequestValidationFailed(f"Cannot {verb} yourself")

    def request_follow(self, follower_id: str, following_id: str) -> FollowAccepted:
        """Schedule follower → following and return the 202 body immediately."""
        self._validate_ids(follower_id, following_id, "follow")
        self._supervisor.spawn(
            self.run_follow(follower_id, following_id),
            name=f"follow:{follower_id}->{following_id}",
        )
        return FollowAccepted(
            message="Follow request accepted",
            follower_id=follower_id,
            following_id=following_id,
        )

    def request_unfollow(self, follower_id: str, following_id: str) -> FollowAccepted:
        self._validate_ids(follower_id, following_id, "unfollow")
        self._supervisor.spawn(
            self.run_unfollow(follower_id, following_id),
            name=f"unfollow:{follower_id}->{following_id}",
        )
        return FollowAccepted(
            message="Unfollow request accepted",
            follower_id=follower_id,
            following_id=following_id,
        )

    # ─────────────────────────── Error boundary ───────────────────────────

    async def run_follow(self, follower_id: str, following_id: str) -> Optional[FollowOutcome]:
        return await self._supervised("follow", follower_id, following_id, self.follow)

    async def run_unfollow(self, follower_id: str, following_id: str) -> Optional[FollowOutcome]:
        return await self._supervised("unfollow", follower_id, following_id, self.unfollow)

    async def _supervised(
        self,
        operation: str,
        follower_id: str,
        following_id: str,
        step: Callable[[str, str], Awaitable[FollowOutcome]],
    ) -> Optional[FollowOutcome]:
        """
        Run one background phase to completion. Never raises: the outcome is
        returned on success, None after the failure has been dead-lettered.
        """
        t0 = time.perf_counter()
        with tracer.start_as_current_span(f"{operation}_user") as span:
            span.set_attribute("follow.follower_id", follower_id)
            span.set_attribute("follow.following_id", following_id)
            try:
                outcome = await step(follower_id, following_id)
            except Exception as exc:
                span.record_exception(exc)
                RELATIONSHIP_OPERATIONS_TOTAL.labels(operation, "failed").inc()
                logger.error(
                    "Background %s %s → %s failed: %s",
                    operation, follower_id, following_id, _describe(exc),
                    exc_info=not isinstance(exc, (ParticipantNotFound, RelationshipNotFound)),
                )
                await self._dead_letter(operation, follower_id, following_id, exc)
                return None
            finally:
                RELATIONSHIP_BACKGROUND_SECONDS.labels(operation).observe(
                    time.perf_counter() - t0
                )
            span.set_attribute("follow.outcome", outcome.value)

        RELATIONSHIP_OPERATIONS_TOTAL.labels(operation, outcome.value).inc()
        return outcome

    async def _dead_letter(
        self, operation: str, follower_id: str, following_id: str, exc: BaseException
    ) -> None:
        DEAD_LETTER_EVENTS_TOTAL.labels(operation).inc()
        try:
            await self._publisher.publish(
                settings.kafka_topic_dead_letter,
                {
                    "operation": operation,
                    "followerId": follower_id,
                    "followingId": following_id,
                    "error": _describe(exc),
                },
            )
        except Exception as dlq_exc:
            logger.error(
                "Failed to publish %s error event for %s → %s: %s",
                operation, follower_id, following_id, dlq_exc,
            )

    # ─────────────────────────── Background steps ─────────────────────────

    async def follow(self, follower_id: str, following_id: str) -> FollowOutcome:
        change = await self._create_edge(follower_id, following_id)
        await self._invalidate(follower_id, following_id)

        # Only a genuinely new edge is announced; a repeat follow stays silent.
        if change.outcome is FollowOutcome.CREATED:
            await self._publisher.publish(
                settings.kafka_topic_user_followed,
                {
                    "followerId": follower_id,
                    "followingId": following_id,
                    "followerAuthId": change.follower_auth_id,
                    "followingAuthId": change.following_auth_id,
                },
                dedup_key=follow_dedup_key(follower_id, following_id),
            )
            logger.info("%s followed %s", follower_id, following_id)
        else:
            logger.info("%s already follows %s — no-op", follower_id, following_id)
        return change.outcome

    async def unfollow(self, follower_id: str, following_id: str) -> FollowOutcome:
        change = await self._delete_edge(follower_id, following_id)
        await self._invalidate(follower_id, following_id)
        await self._publisher.publish(
            settings.kafka_topic_user_unfollowed,
            {"followerId": follower_id, "followingId": following_id},
        )
        logger.info("%s unfollowed %s", follower_id, following_id)
        return change.outcome

    async def _bounded(self, coro: Awaitable[EdgeChange]) -> EdgeChange:
        try:
            return await asyncio.wait_for(coro, timeout=self._transaction_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Store transaction exceeded {self._transaction_timeout:g}s"
            ) from None

    async def _create_edge(self, follower_id: str, following_id: str) -> EdgeChange:
        try:
            async with self._session_factory() as session:
                change = await self._bounded(
                    self._insert_edge(session, follower_id, following_id)
                )
                await session.commit()
                return change
        except IntegrityError:
            # Either a concurrent follow won the insert, or a participant was
            # deleted under us. Only the first is a no-op.
            async with self._session_factory() as session:
                existing = await self._find_edge(session, follower_id, following_id)
            if existing is None:
                raise
            logger.info(
                "Concurrent follow %s → %s already committed", follower_id, following_id
            )
            return EdgeChange(FollowOutcome.ALREADY_EXISTS)

    async def _insert_edge(
        self, session: AsyncSession, follower_id: str, following_id: str
    ) -> EdgeChange:
        follower, following = await self._load_participants(session, follower_id, following_id)
        if await self._find_edge(session, follower_id, following_id) is not None:
            return EdgeChange(
                FollowOutcome.ALREADY_EXISTS, follower.auth_user_id, following.auth_user_id
            )
        session.add(Follow(follower_id=follower_id, following_id=following_id))
        await session.flush()
        return EdgeChange(FollowOutcome.CREATED, follower.auth_user_id, following.auth_user_id)

    async def _delete_edge(self, follower_id: str, following_id: str) -> EdgeChange:
        async with self._session_factory() as session:
            change = await self._bounded(self._remove_edge(session, follower_id, following_id))
            await session.commit()
        return change

    async def _remove_edge(
        self, session: AsyncSession, follower_id: str, following_id: str
    ) -> EdgeChange:
        edge = await self._find_edge(session, follower_id, following_id)
        if edge is None:
            raise RelationshipNotFound("Relationship does not exist")
        await session.delete(edge)
        await session.flush()
        return EdgeChange(FollowOutcome.REMOVED)

    async def _load_participants(
        self, session: AsyncSession, follower_id: str, following_id: str
    ) -> tuple[User, User]:
        # One round trip for both rows; an AsyncSession cannot run queries concurrently.
        result = await session.scalars(
            select(User).where(User.id.in_([follower_id, following_id]))
        )
        by_id = {user.id: user for user in result}
        missing = [uid for uid in (follower_id, following_id) if uid not in by_id]
        if missing:
            raise ParticipantNotFound(f"One or more users not found: {', '.join(missing)}")
        return by_id[follower_id], by_id[following_id]

    async def _find_edge(
        self, session: AsyncSession, follower_id: str, following_id: str
    ) -> Optional[Follow]:
        return await session.get(Follow, (follower_id, following_id))

    async def _invalidate(self, follower_id: str, following_id: str) -> None:
        keys = relationship_keys(follower_id, following_id)
        results = await asyncio.gather(
            *(self._cache.invalidate(key) for key in keys), return_exceptions=True
        )
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.warning("Cache invalidation failed for %s: %s", key, result)

    # ─────────────────────────── Reads ────────────────────────────────────

    async def list_followers(self, user_id: str, page: int, limit: int) -> FollowersPage:
        """Users following `user_id`, most recent edge first."""
        with tracer.start_as_current_span("list_followers"):
            key = followers_key(user_id)
            cached = await self._cache.get_page(key, page, limit)
            if cached is not None:
                return FollowersPage.model_validate(cached)
            generation = await self._cache.page_generation(key)

            users, pagination = await self._page(
                match=Follow.following_id, other=Follow.follower_id,
                user_id=user_id, page=page, limit=limit,
            )
            body = FollowersPage(followers=users, pagination=pagination)
            await self._cache.set_page(
                key, page, limit, body.model_dump(mode="json", by_alias=True), generation
            )
            return body

    async def list_following(self, user_id: str, page: int, limit: int) -> FollowingPage:
        """Users `user_id` follows, most recently followed first."""
        with tracer.start_as_current_span("list_following"):
            key = following_key(user_id)
            cached = await self._cache.get_page(key, page, limit)
            if cached is not None:
                return FollowingPage.model_validate(cached)
            generation = await self._cache.page_generation(key)

            users, pagination = await self._page(
                match=Follow.follower_id, other=Follow.following_id,
                user_id=user_id, page=page, limit=limit,
            )
            body = FollowingPage(following=users, pagination=pagination)
            await self._cache.set_page(
                key, page, limit, body.model_dump(mode="json", by_alias=True), generation
            )
            return body

    async def _page(self, match, other, user_id: str, page: int, limit: int):
        """
        Count and page the edges matching `user_id` in a single transaction so
        `total` and the page come from the same snapshot. An unknown user
        simply has no edges.
        """
        offset = (page - 1) * limit
        async with self._session_factory() as session, session.begin():
            total = await session.scalar(
                select(func.count()).select_from(Follow).where(match == user_id)
            )
            rows = await session.scalars(
                select(User)
                .join(Follow, User.id == other)
                .where(match == user_id)
                .order_by(Follow.created_at.desc(), other.desc())
                .offset(offset)
                .limit(limit)
            )
            users = [UserResponse.model_validate(u) for u in rows]

        pagination = Pagination(
            page=page,
            limit=limit,
            total=total or 0,
            has_more=offset + len(users) < (total or 0),
        )
        return users, pagination


# Singleton
follow_orchestrator = FollowOrchestrator(
    AsyncSessionLocal, profile_cache, event_publisher, background_tasks
)


def get_follow_orchestrator() -> FollowOrchestrator:
    """FastAPI dependency; overridden in tests."""
    return follow_orchestrator
