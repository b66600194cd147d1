"""
Background scheduler: reclaims lapsed holds every
``SLOT_SWEEP_INTERVAL_SECONDS`` and expires stale waitlist entries once
a day.  Run exactly one instance next to the web workers.
"""
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import close_old_connections

from reservations.services.sweeper import ExpirySweeper
from reservations.services.waitlist import WaitlistCoordinator

logger = logging.getLogger(__name__)


def sweep_job():
    close_old_connections()
    try:
        ExpirySweeper().sweep()
    except Exception:
        # next tick retries
        logger.exception("hold sweep run failed")
    finally:
        close_old_connections()


def expire_waitlist_job():
    close_old_connections()
    try:
        WaitlistCoordinator().expire_entries()
    except Exception:
        logger.exception("waitlist expiry run failed")
    finally:
        close_old_connections()


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=settings.TIME_ZONE)
    scheduler.add_job(
        sweep_job,
        IntervalTrigger(seconds=settings.SLOT_SWEEP_INTERVAL_SECONDS),
        id='sweep_holds', max_instances=1, coalesce=True, replace_existing=True,
    )
    scheduler.add_job(
        expire_waitlist_job,
        CronTrigger(hour=settings.WAITLIST_EXPIRY_CRON_HOUR, minute=0),
        id='expire_waitlist', max_instances=1, coalesce=True, replace_existing=True,
    )
    return scheduler


class Command(BaseCommand):
    help = "Run the hold sweeper and waitlist expiry on a schedule (blocking)."

    def handle(self, *args, **options):
        scheduler = build_scheduler()
        self.stdout.write(self.style.SUCCESS(
            f"Scheduler started: sweep every {settings.SLOT_SWEEP_INTERVAL_SECONDS}s, "
            f"waitlist expiry daily at {settings.WAITLIST_EXPIRY_CRON_HOUR:02d}:00"
        ))
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown(wait=False)
            self.stdout.write("Scheduler stopped.")
