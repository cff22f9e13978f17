import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import current_app

from utils.reminders import run_reminder_sweep

log = logging.getLogger(__name__)


def reminder_job(app):
    with app.app_context():
        try:
            result = run_reminder_sweep()
        except Exception:
            # Keep the scheduler thread alive; the next interval retries
            current_app.logger.exception("scheduled reminder sweep failed")
            return
        current_app.logger.info(
            "scheduled reminder sweep: processed=%s sent=%s failed=%s",
            result.processed,
            result.sent,
            result.failed,
        )


def start_scheduler(app):
    scheduler = BackgroundScheduler()
    hours = int(app.config.get('REMINDER_SWEEP_INTERVAL_HOURS', 24))
    scheduler.add_job(
        reminder_job,
        'interval',
        hours=hours,
        args=[app],
        id='fee_reminder_sweep',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    log.info("reminder sweep scheduled every %s hours", hours)
    return scheduler
