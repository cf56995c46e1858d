# starraffle/tasks/scheduler.py
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from starraffle.core.config import settings
from starraffle.services.delivery import DeliveryService

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def delivery_retry_job(delivery: DeliveryService):
    """
    Re-send prizes and refunds that are still pending or failed.
    """
    try:
        await delivery.retry_pending()
    except Exception as e:
        logger.exception("[delivery_retry_job] error: %s", e)


def start_scheduler(delivery: DeliveryService):
    scheduler.add_job(
        delivery_retry_job,
        "interval",
        seconds=settings.DELIVERY_RETRY_SECONDS,
        args=[delivery],
        id="delivery_retry",
        replace_existing=True,
        coalesce=True,
        max_instances=1,        # one sweep at a time
        misfire_grace_time=30,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
