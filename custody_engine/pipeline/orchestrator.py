from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog

from ..alerts.notifier import build_notifier
from ..config import settings
from ..db import get_conn, migrate
from ..errors import NotFoundError
from . import runs
from .jobs import JOBS, JobContext, JobSpec
from .locking import acquire_lock, release_lock
from .retry import RetryPolicy, run_with_retry

log = structlog.get_logger()


class JobRunner:
    """Runs one job type at a time under its lock and retry policy.

    Every trigger is recorded in job_runs: a trigger that finds the lock held
    is recorded as skipped, anything else ends succeeded or failed.
    """

    def __init__(
        self,
        ctx: JobContext,
        *,
        sleep: Callable[[float], None] = time.sleep,
        policies: dict[str, RetryPolicy] | None = None,
        lock_ttl_seconds: int | None = None,
    ):
        self.ctx = ctx
        self.sleep = sleep
        self.policies = policies or {}
        self.lock_ttl_seconds = settings.lock_ttl_seconds if lock_ttl_seconds is None else lock_ttl_seconds

    def spec_for(self, job_type: str) -> JobSpec:
        spec = JOBS.get(job_type)
        if spec is None:
            raise NotFoundError(f"Unknown job type: {job_type}")
        return spec

    def run(self, job_type: str, run_id: str | None = None) -> dict:
        spec = self.spec_for(job_type)
        run_id = run_id or str(uuid.uuid4())
        conn, clock = self.ctx.conn, self.ctx.clock
        lock_name = f"job:{job_type}"

        if not acquire_lock(conn, lock_name, run_id, ttl_seconds=self.lock_ttl_seconds, clock=clock):
            runs.record_skipped_run(conn, run_id, job_type, "lock_held", clock=clock)
            log.info("job_skipped", job=job_type, run_id=run_id, reason="lock_held")
            return runs.get_run_status(conn, run_id)

        try:
            runs.start_run(conn, run_id, job_type, clock=clock)
            log.info("job_started", job=job_type, run_id=run_id)
            policy = self.policies.get(job_type, spec.policy)
            outcome = run_with_retry(
                lambda: spec.body(self.ctx),
                policy,
                sleep=self.sleep,
                on_attempt=lambda n: runs.record_attempt(conn, run_id, n),
                label=job_type,
            )
            if outcome.ok:
                runs.finish_run_ok(conn, run_id, outcome.attempts, outcome.value, clock=clock)
                log.info("job_succeeded", job=job_type, run_id=run_id, attempts=outcome.attempts)
            else:
                err = f"{type(outcome.error).__name__}: {outcome.error}"
                runs.finish_run_fail(conn, run_id, outcome.attempts, err, clock=clock)
                log.error("job_failed", job=job_type, run_id=run_id, attempts=outcome.attempts, err=err,
                          exc_info=outcome.error)
        finally:
            release_lock(conn, lock_name, run_id)
        return runs.get_run_status(conn, run_id)


def run_job_now(job_type: str, run_id: str | None = None) -> dict:
    """Open a connection and run one job to completion."""
    conn = get_conn(settings.db_path)
    try:
        migrate(conn)
        runner = JobRunner(JobContext(conn=conn, notifier=build_notifier()))
        return runner.run(job_type, run_id)
    finally:
        conn.close()

def trigger_job(background, job_type: str) -> str:
    """Queue a run on FastAPI BackgroundTasks and return its run_id."""
    if job_type not in JOBS:
        raise NotFoundError(f"Unknown job type: {job_type}")
    run_id = str(uuid.uuid4())
    background.add_task(run_job_now, job_type, run_id)
    return run_id
