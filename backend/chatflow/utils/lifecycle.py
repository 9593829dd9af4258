# /chatflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional

import redis.asyncio as redis
from fastapi import FastAPI

from chatflow.config.settings import settings
from chatflow.jobs.follow_up_job import FollowUpScheduler
from chatflow.services.ai_service import build_ai_provider
from chatflow.services.cache_service import CacheService, cache_service
from chatflow.services.channel_service import build_channel_sender
from chatflow.services.crm_service import InMemoryCrmGateway
from chatflow.services.db_service import (
    DatabaseService, MongoCrmGateway, MongoFlowSource, MongoScheduleStore, MongoSessionStore
)
from chatflow.services.flow_source import FlowDefinitionSource, InMemoryFlowSource
from chatflow.services.integration_service import HttpIntegrationClient
from chatflow.services.lock_service import LocalLockManager, RedisLockManager
from chatflow.services.session_store import InMemoryScheduleStore, InMemorySessionStore, SessionStore
from chatflow.utils.alerting import alerting_service
from chatflow.utils.logging import setup_logging
from chatflow.workflows.catalog import EngineServices, build_default_catalog
from chatflow.workflows.engine import StepInterpreter
from chatflow.workflows.scheduler import ExecutionScheduler

# This file wires the engine from settings and manages the application's
# lifespan: building collaborators on startup and closing connections on
# shutdown. The standalone timer process (backend/scheduler.py) reuses
# `build_runtime`.

logger = logging.getLogger(__name__)


@dataclass
class EngineRuntime:
    engine: ExecutionScheduler
    follow_up: FollowUpScheduler
    store: SessionStore
    flows: FlowDefinitionSource
    db: Optional[DatabaseService] = None
    closeables: List[Any] = field(default_factory=list)

    async def close(self):
        for resource in self.closeables:
            try:
                await resource.cleanup()
            except Exception as e:
                logger.warning(f"Error while closing {type(resource).__name__}: {e}")
        if self.db is not None:
            self.db.close()


async def build_runtime(cache: Optional[CacheService] = cache_service) -> EngineRuntime:
    """Build the engine against MongoDB/Redis when configured, in-memory otherwise."""
    if settings.redis_url:
        locks = RedisLockManager(
            redis.from_url(settings.redis_url),
            default_timeout=settings.lock_timeout_seconds,
            lease_seconds=settings.lock_lease_seconds,
        )
    else:
        logger.warning("REDIS_URL not set, session locks are process-local.")
        locks = LocalLockManager(default_timeout=settings.lock_timeout_seconds)

    db = None
    if settings.mongo_uri:
        db = DatabaseService(settings.mongo_uri)
        await db.create_indexes()
        store = MongoSessionStore(db.db, locks)
        schedules = MongoScheduleStore(db.db)
        flows = MongoFlowSource(db.db)
        crm = MongoCrmGateway(db.db)
    else:
        logger.warning("MONGO_URI not set, sessions are kept in memory and lost on restart.")
        store = InMemorySessionStore(locks)
        schedules = InMemoryScheduleStore()
        flows = InMemoryFlowSource()
        crm = InMemoryCrmGateway()

    channel = build_channel_sender()
    integrations = HttpIntegrationClient()
    follow_up = FollowUpScheduler(
        schedules,
        channel,
        max_retries=settings.follow_up_max_retries,
        batch_size=settings.follow_up_batch_size,
    )
    services = EngineServices(
        channel=channel,
        ai=build_ai_provider(),
        integrations=integrations,
        crm=crm,
        timers=follow_up,
    )
    interpreter = StepInterpreter(store, build_default_catalog(), services)
    engine = ExecutionScheduler(store, flows, interpreter, cache=cache)

    closeables: List[Any] = [integrations, alerting_service]
    if hasattr(channel, "cleanup"):
        closeables.append(channel)
    return EngineRuntime(engine=engine, follow_up=follow_up, store=store, flows=flows, db=db, closeables=closeables)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    runtime = await build_runtime()
    app.state.runtime = runtime
    app.state.engine = runtime.engine

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await runtime.close()
    await cache_service.close()
