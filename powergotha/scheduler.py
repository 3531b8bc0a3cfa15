import pytz
import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from . import config
from .db import SessionLocal
from .payments import expire_plans

logger = structlog.get_logger()


def run_expire_plans(session_factory=SessionLocal):
    """Daily sweep in its own session; failures are logged and wait for the next run."""
    logger.info("expire_plans_starting")
    db = session_factory()
    try:
        expire_plans(db)
    except Exception:
        logger.exception("expire_plans_failed")
    finally:
        db.close()


def build_scheduler(timezone: str = config.SCHEDULER_TIMEZONE, session_factory=SessionLocal) -> BackgroundScheduler:
    tz = pytz.timezone(timezone)
    scheduler = BackgroundScheduler(timezone=tz)
    scheduler.add_job(
        run_expire_plans,
        CronTrigger(hour=0, minute=0, timezone=tz),
        kwargs={"session_factory": session_factory},
        id="expire_plans",
        name="Expire lapsed subscription plans at midnight",
        replace_existing=True,
    )
    return scheduler
