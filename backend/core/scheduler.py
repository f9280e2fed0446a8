"""
Scheduler for background real-time jobs: periodic stats snapshots and
stale socket session cleanup
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from core.config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


async def broadcast_stats_snapshot(broadcaster, service):
    """
    Push a fresh stats snapshot to every team scope that has a subscriber.

    Stats also go out after each mutation; this keeps time-based figures
    (warranty window, 24h activity) current on idle screens.
    """
    scopes = broadcaster.registry.active_scopes()
    for scope in scopes:
        try:
            stats = await service.get_stats(scope)
        except Exception as e:
            logger.error(f"❌ Stats snapshot for team-{scope} failed: {e}", exc_info=True)
            continue
        await broadcaster.publish_stats(scope, stats)
    if scopes:
        logger.debug(f"📊 Stats snapshot sent to {len(scopes)} scope(s)")


def cleanup_stale_sessions(broadcaster):
    """Drop registry entries for sockets the server no longer holds"""
    try:
        removed = broadcaster.sweep_stale_sessions()
        if removed:
            logger.info(f"🧹 Removed {removed} stale socket session(s)")
    except Exception as e:
        logger.error(f"❌ Error during session cleanup: {e}", exc_info=True)


def start_scheduler(broadcaster, service):
    """Start the background scheduler with all scheduled tasks"""
    try:
        scheduler.add_job(
            broadcast_stats_snapshot,
            trigger=IntervalTrigger(seconds=settings.STATS_BROADCAST_SECONDS),
            args=[broadcaster, service],
            id='stats_snapshot',
            name='Periodic Stats Broadcast',
            replace_existing=True,
        )
        scheduler.add_job(
            cleanup_stale_sessions,
            trigger=IntervalTrigger(minutes=settings.SESSION_TIMEOUT_MINUTES),
            args=[broadcaster],
            id='session_cleanup',
            name='Stale Session Cleanup',
            replace_existing=True,
        )

        logger.info("📅 Scheduler configured:")
        logger.info(f"  - Stats broadcast: every {settings.STATS_BROADCAST_SECONDS}s")
        logger.info(f"  - Session cleanup: every {settings.SESSION_TIMEOUT_MINUTES}min")

        scheduler.start()
        logger.info("✅ Background scheduler started successfully")

    except Exception as e:
        logger.error(f"❌ Failed to start scheduler: {e}", exc_info=True)


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    try:
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("✅ Scheduler shut down successfully")
    except Exception as e:
        logger.error(f"❌ Error shutting down scheduler: {e}", exc_info=True)
