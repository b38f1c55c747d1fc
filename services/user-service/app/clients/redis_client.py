"""
Redis client wrapper — the service's best-effort cache.

Key layout:
  • Profile        — STRING (JSON) keyed by user:profile:{user_id}
  • Followers page — HASH keyed by follow:{user_id}:followers
                      field = "{page}:{limit}", value = JSON page
  • Following page — HASH keyed by follow:{user_id}:following

Redis is never authoritative: every read miss or Redis error falls through
to the relational store, and every error is logged and swallowed here.
Invalidating a list key drops all of its cached pages at once.

Every invalidation also bumps a generation counter ({key}:gen). A reader
takes the generation before querying the store and `set_page` only writes
if it is unchanged, so a page read before a follow committed cannot be
written back after that follow invalidated the key.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from app.config import settings
from app.telemetry import CACHE_INVALIDATION_ERRORS_TOTAL

logger = logging.getLogger(__name__)


def profile_key(user_id: str) -> str:
    return f"user:profile:{user_id}"


def followers_key(user_id: str) -> str:
    return f"follow:{user_id}:followers"


def following_key(user_id: str) -> str:
    return f"follow:{user_id}:following"


def generation_key(key: str) -> str:
    return f"{key}:gen"


def relationship_keys(follower_id: str, following_id: str) -> list[str]:
    """The four keys made stale by any change to the follower → following edge."""
    return [
        profile_key(following_id),
        profile_key(follower_id),
        following_key(follower_id),
        followers_key(following_id),
    ]


class ProfileCache:
    def __init__(self, redis: Optional[aioredis.Redis] = None) -> None:
        self._redis = redis

    async def start(self) -> None:
        self._redis = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Redis not initialised; call start() at startup")
        return self._redis

    # ─────────────────────── Invalidation ─────────────────────────────────

    async def invalidate(self, key: str) -> None:
        """
        Delete `key`, or every key matching it when it contains a glob `*`.
        Failures are logged and counted, never raised.
        """
        try:
            r = self._client()
            if "*" in key:
                matched = [
                    k async for k in r.scan_iter(match=key, count=500)
                    if not k.endswith(":gen")
                ]
            else:
                matched = [key]
            if not matched:
                return
            async with r.pipeline(transaction=True) as pipe:
                for k in matched:
                    pipe.incr(generation_key(k))
                    pipe.expire(generation_key(k), settings.cache_generation_ttl)
                pipe.delete(*matched)
                await pipe.execute()
        except Exception as exc:
            CACHE_INVALIDATION_ERRORS_TOTAL.inc()
            logger.warning("Cache invalidation failed for %s: %s", key, exc)

    # ─────────────────────── Profile (STRING) ─────────────────────────────

    async def get_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._client().get(profile_key(user_id))
        except Exception as exc:
            logger.warning("Profile cache read failed for %s: %s", user_id, exc)
            return None
        return json.loads(raw) if raw else None

    async def set_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        try:
            await self._client().set(
                profile_key(user_id), json.dumps(profile), ex=settings.profile_cache_ttl
            )
        except Exception as exc:
            logger.warning("Profile cache write failed for %s: %s", user_id, exc)

    # ─────────────────────── Relationship pages (HASH) ────────────────────

    async def get_page(self, key: str, page: int, limit: int) -> Optional[dict[str, Any]]:
        try:
            raw = await self._client().hget(key, f"{page}:{limit}")
        except Exception as exc:
            logger.warning("Page cache read failed for %s: %s", key, exc)
            return None
        return json.loads(raw) if raw else None

    async def page_generation(self, key: str) -> Optional[str]:
        """Current generation of `key`; None when Redis is unavailable."""
        try:
            return await self._client().get(generation_key(key)) or "0"
        except Exception as exc:
            logger.warning("Generation read failed for %s: %s", key, exc)
            return None

    async def set_page(
        self,
        key: str,
        page: int,
        limit: int,
        body: dict[str, Any],
        generation: Optional[str],
    ) -> None:
        """Cache one page unless `key` was invalidated since `generation` was read."""
        if generation is None:
            return
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                # WATCH aborts the MULTI below if an invalidation lands in between
                await pipe.watch(generation_key(key))
                if (await pipe.get(generation_key(key)) or "0") != generation:
                    logger.debug("Skipped stale page write for %s", key)
                    return
                pipe.multi()
                pipe.hset(key, f"{page}:{limit}", json.dumps(body))
                pipe.expire(key, settings.relationship_cache_ttl)
                await pipe.execute()
        except WatchError:
            logger.debug("Page for %s invalidated during write; not cached", key)
        except Exception as exc:
            logger.warning("Page cache write failed for %s: %s", key, exc)


# Singleton
profile_cache = ProfileCache()


def get_profile_cache() -> ProfileCache:
    """FastAPI dependency; overridden in tests."""
    return profile_cache
