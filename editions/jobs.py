"""
Scheduled jobs for the Edition Engine.

Usage in the application setup:
    from editions.jobs import register_edition_jobs
    register_edition_jobs(self.scheduler, self.app, self._timezone)
"""
from navconfig.logging import logging

from .conf import EDITIONS_SWEEP_INTERVAL
from .service import get_service


async def sweep_expired_reservations(app) -> int:
    """
    Return orphaned ledger reservations to the pool.

    Called by APScheduler every ``EDITIONS_SWEEP_INTERVAL`` seconds.

    Args:
        app: The aiohttp application holding the edition service
    """
    logger = logging.getLogger('Editions.Jobs')
    service = get_service(app)
    released = await service.sweep_reservations()
    if released:
        logger.info(f"Reservation sweep released {released} units")
    else:
        logger.debug("Reservation sweep: nothing to release")
    return released


def register_edition_jobs(scheduler, app, timezone=None):
    """
    Register edition engine scheduler jobs.

    Args:
        scheduler: APScheduler instance
        app: aiohttp application
        timezone: Timezone for job scheduling
    """
    scheduler.add_job(
        sweep_expired_reservations,
        'interval',
        seconds=EDITIONS_SWEEP_INTERVAL,
        args=[app],
        id='editions_reservation_sweep',
        name='Edition Reservation Sweep',
        replace_existing=True,
        timezone=timezone,
        max_instances=1,
        coalesce=True
    )
