"""
Identity-sync consumer — creates profiles for new auth-service identities.

For every 'user-created' event:
  1. Ignore registration-status updates (registrationStatus == COMPLETE).
  2. Skip identities that already have a profile (redelivery, or the profile
     was provisioned synchronously through POST /users).
  3. Otherwise create the profile row.

Runs as a task inside the API process, started and stopped by the lifespan.
A bad message is logged and skipped; the loop only ends on shutdown.
"""
import asyncio
import json
import logging
from typing import Any, Optional

from aiokafka import AIOKafkaConsumer
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import AsyncSessionLocal
from app.errors import ConflictError
from app.models import User
from app.schemas import UserCreate
from app.services import profile_service

logger = logging.getLogger(__name__)


def _deserialize(raw: bytes) -> Optional[dict]:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Undecodable user-created event (%d bytes)", len(raw))
        return None


async def handle_user_created(
    msg: dict[str, Any],
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> Optional[User]:
    """Returns the created profile, or None when the event needed no action."""
    if msg.get("registrationStatus") == "COMPLETE":
        logger.info("Registration completed for auth user %s", msg.get("authId"))
        return None

    auth_id = msg.get("authId")
    username = msg.get("username")
    if not auth_id or not username:
        logger.warning("Malformed user-created event: %s", msg)
        return None

    try:
        body = UserCreate(auth_user_id=auth_id, username=username)
    except ValidationError as exc:
        logger.warning("Rejected user-created event for %s: %s", auth_id, exc.errors())
        return None

    async with session_factory() as session:
        existing = await session.scalar(select(User).where(User.auth_user_id == auth_id))
        if existing:
            logger.info("Profile already exists for auth user %s", auth_id)
            return None
        try:
            user = await profile_service.create_user(session, body)
            await session.commit()
        except ConflictError as exc:
            await session.rollback()
            logger.warning("Could not create profile for auth user %s: %s", auth_id, exc)
            return None
    return user


class IdentitySyncConsumer:
    def __init__(self) -> None:
        self._consumer: Optional[AIOKafkaConsumer] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._consumer = AIOKafkaConsumer(
            settings.kafka_topic_user_created,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.kafka_consumer_group,
            auto_offset_reset="earliest",
            value_deserializer=_deserialize,
        )
        await self._consumer.start()
        self._task = asyncio.create_task(self._run(), name="identity-sync")
        logger.info(
            "Identity sync listening on topic '%s'", settings.kafka_topic_user_created
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if self._consumer:
            await self._consumer.stop()

    async def _run(self) -> None:
        async for msg in self._consumer:
            if not isinstance(msg.value, dict):
                continue
            try:
                await handle_user_created(msg.value)
            except Exception as exc:
                logger.error("Identity sync error for %s: %s", msg.value, exc)


# Singleton
identity_sync = IdentitySyncConsumer()
