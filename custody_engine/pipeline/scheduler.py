from __future__ import annotations
import asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from zoneinfo import ZoneInfo
import structlog

from ..config import settings
from .jobs import ACCOUNT_SYNC, ALERT_GENERATION, PORTFOLIO_CALCULATION, WALLET_SYNC
from .orchestrator import run_job_now

_log = structlog.get_logger()
_scheduler: AsyncIOScheduler | None = None

def _tz() -> ZoneInfo:
    return ZoneInfo(settings.local_tz or "UTC")

def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone=_tz())
    return _scheduler

def job_crons() -> dict[str, str]:
    return {
        WALLET_SYNC: settings.wallet_sync_cron,
        ACCOUNT_SYNC: settings.account_sync_cron,
        PORTFOLIO_CALCULATION: settings.portfolio_calculation_cron,
        ALERT_GENERATION: settings.alert_generation_cron,
    }

async def run_scheduled(job_type: str):
    # Retry backoff sleeps; keep them off the event loop.
    run = await asyncio.to_thread(run_job_now, job_type)
    _log.info("scheduled_job_done", job=job_type, run_id=run["run_id"], status=run["status"])

def schedule_jobs(sched: AsyncIOScheduler | None = None, start: bool = True) -> AsyncIOScheduler:
    sched = sched or get_scheduler()
    tz = _tz()
    for job_type, expr in job_crons().items():
        sched.add_job(
            run_scheduled,
            CronTrigger.from_crontab(expr, timezone=tz),
            args=[job_type],
            id=job_type,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    if start:
        sched.start()
        _log.info("job_scheduler_started", jobs=list(job_crons()))
    return sched

def shutdown_scheduler():
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
