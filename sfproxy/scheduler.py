from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sfproxy.services.persistence import StatsPersistence


def start_stats_sync(persistence: StatsPersistence, logger, minutes: int) -> AsyncIOScheduler:
    """Flush stats on a timer so idle instances still reach the external store."""
    scheduler = AsyncIOScheduler()

    async def _job():
        try:
            if persistence.maybe_flush() is not None:
                logger.info("event=scheduled_sync_started")
        except Exception as e:
            logger.error("Unexpected error in stats sync job: %s", str(e))

    scheduler.add_job(_job, "interval", minutes=minutes)
    scheduler.start()
    return scheduler
