# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chatflow.config.settings import settings
from chatflow.utils.lifecycle import build_runtime, EngineRuntime
from chatflow.utils.logging import setup_logging

# Standalone timer process. The engine never sleeps; this poller delivers
# due follow-up schedules (wait-node resumes, deferred messages) and times
# out sessions whose deadline passed without any event.

logger = logging.getLogger("SchedulerService")


async def deliver_due_follow_ups(runtime: EngineRuntime):
    summary = await runtime.follow_up.run_due(runtime.engine)
    logger.debug(f"Follow-up poll: {summary}")


async def expire_stale_sessions(runtime: EngineRuntime):
    expired = await runtime.engine.expire_stale_sessions(limit=settings.follow_up_batch_size)
    if expired:
        logger.info(f"Timed out {expired} stale session(s).")


async def main():
    setup_logging()
    runtime = await build_runtime()
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Job 1: Deliver due follow-ups and timer resumes
    scheduler.add_job(
        deliver_due_follow_ups,
        'interval',
        seconds=settings.follow_up_poll_seconds,
        args=[runtime],
        id="follow_up_delivery_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled job: deliver_due_follow_ups (every {settings.follow_up_poll_seconds} seconds).")

    # Job 2: Sweep sessions past their expiry
    scheduler.add_job(
        expire_stale_sessions,
        'interval',
        minutes=5,
        args=[runtime],
        id="session_expiry_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled job: expire_stale_sessions (every 5 minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
