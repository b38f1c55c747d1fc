"""
User Service — entry point.

Owns user profiles and the follower/following graph for the platform.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create tables if not present (TiDB)
  3. Start Kafka producer (relationship + dead-letter events)
  4. Connect to Redis (profile / relationship cache)
  5. Start the identity-sync consumer (user-created events)
  6. Expose Prometheus /metrics endpoint

Shutdown drains detached follow/unfollow tasks before closing the
connections they depend on.
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from app.config import settings
from app.database import init_db
from app.errors import register_exception_handlers
from app.telemetry import setup_tracing, instrument_app
from app.tasks import background_tasks
from app.clients.kafka_producer import event_publisher
from app.clients.redis_client import profile_cache
from app.consumers.identity_sync import identity_sync
from app.routers import relationships, users

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting User Service (env=%s)", settings.environment)

    await init_db()
    await event_publisher.start()
    await profile_cache.start()
    if settings.identity_sync_enabled:
        await identity_sync.start()

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await background_tasks.drain(settings.background_drain_timeout)
    if settings.identity_sync_enabled:
        await identity_sync.stop()
    await event_publisher.stop()
    await profile_cache.stop()


app = FastAPI(
    title="User Service",
    description=(
        "User profiles and the follower/following graph. Follow and unfollow "
        "are accepted immediately and applied in the background."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(relationships.router, prefix="/users", tags=["Relationships"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics, scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
