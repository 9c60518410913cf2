"""Background deposit polling."""
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from extensions import db
from logger import deposit_logger

scheduler = BackgroundScheduler(
    job_defaults={
        "coalesce": True,        # missed runs collapse into one
        "max_instances": 1,
        "misfire_grace_time": 120,
    },
    timezone="UTC",
)


def scan_deposits_job(app):
    from services.deposits import DepositMonitor

    with app.app_context():
        try:
            DepositMonitor.scan_all()
        except Exception as e:
            # keep the job scheduled; the next pass starts from the processed-set
            deposit_logger.error(f"Deposit scan job crashed: {e}", exc_info=True)
        finally:
            db.session.remove()


def init_scheduler(app):
    """Schedule the deposit scan every DEPOSIT_SCAN_INTERVAL_MINUTES and once right away."""
    if not app.config.get("SCHEDULER_ENABLED", False):
        return None

    if scheduler.get_job("deposit_scan") is None:
        scheduler.add_job(
            scan_deposits_job,
            trigger=IntervalTrigger(minutes=app.config.get("DEPOSIT_SCAN_INTERVAL_MINUTES", 5)),
            args=[app],
            id="deposit_scan",
            name="Scan TRC20 deposit addresses",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
    if not scheduler.running:
        scheduler.start()
        deposit_logger.info("Deposit scanner started")
    return scheduler
