from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from .schemas import Alert, AlertAction, Allocation, AllocationCreate, AllocationEnd, JobRunStatus, JobTriggered
from ..alerts.storage import acknowledge_alert, alert_summary, dismiss_alert, list_alerts, resolve_alert
from ..config import settings
from ..db import get_conn, migrate
from ..drift.detector import analyze_drift
from ..errors import ConflictError, NotFoundError, ValidationError
from ..holdings import get_client
from ..ledger.allocations import (
    create_allocation_outcome,
    end_allocation_outcome,
    find_oversubscribed_holdings,
    list_allocations,
)
from ..pipeline.jobs import JOB_TYPES
from ..pipeline.runs import get_run_status, list_runs
from ..pipeline.orchestrator import trigger_job
from ..valuation.engine import compute_client_portfolio, value_consolidated

router = APIRouter()

def get_db():
    conn = get_conn(settings.db_path)
    migrate(conn)
    try:
        yield conn
    finally:
        conn.close()

def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(400, {'field': exc.field, 'message': exc.message})
    if isinstance(exc, NotFoundError):
        return HTTPException(404, str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(409, str(exc))
    return HTTPException(500, str(exc))

@router.get(
    '/health',
    summary="Health check",
    description="Returns DB connectivity plus the most recent job run.",
    tags=["Health"],
)
def health(conn=Depends(get_db)):
    try:
        row = conn.execute(
            "SELECT run_id, job_type, status, started_at_utc, finished_at_utc FROM job_runs ORDER BY started_at_utc DESC LIMIT 1"
        ).fetchone()
    except Exception as e:
        raise HTTPException(503, f'db_error: {e}')
    last = None
    if row:
        last = {'run_id': row[0], 'job_type': row[1], 'status': row[2], 'started_at_utc': row[3], 'finished_at_utc': row[4]}
    return {'ok': True, 'db': 'ok', 'last_run': last}

@router.post('/allocations', response_model=Allocation, status_code=201, tags=["Allocations"])
def create_allocation_route(req: AllocationCreate, conn=Depends(get_db)):
    outcome = create_allocation_outcome(conn, **req.model_dump())
    if not outcome.ok:
        raise _http_error(outcome.error)
    return outcome.value.to_dict()

@router.post('/allocations/{allocation_id}/end', response_model=Allocation, tags=["Allocations"])
def end_allocation_route(allocation_id: str, req: Optional[AllocationEnd] = None, conn=Depends(get_db)):
    outcome = end_allocation_outcome(conn, allocation_id, end_date=req.end_date if req else None)
    if not outcome.ok:
        raise _http_error(outcome.error)
    return outcome.value.to_dict()

@router.get('/allocations', response_model=list[Allocation], tags=["Allocations"])
def list_allocations_route(client_id: Optional[str] = None, include_ended: bool = False, conn=Depends(get_db)):
    return [r.to_dict() for r in list_allocations(conn, client_id, include_ended)]

@router.get(
    '/allocations/conflicts',
    summary="Oversubscribed holdings",
    description="Holdings whose active percentage allocations add up to more than 100%.",
    tags=["Allocations"],
)
def allocation_conflicts(conn=Depends(get_db)):
    return {'conflicts': find_oversubscribed_holdings(conn)}

@router.get('/portfolio/clients/{client_id}', tags=["Portfolio"])
def client_portfolio(client_id: str, conn=Depends(get_db)):
    if get_client(conn, client_id) is None:
        raise HTTPException(404, 'Client not found')
    return compute_client_portfolio(conn, client_id).to_dict()

@router.get('/portfolio/consolidated', tags=["Portfolio"])
def consolidated_portfolio(conn=Depends(get_db)):
    return value_consolidated(conn).to_dict()

@router.get('/analytics/drift', tags=["Analytics"])
def drift_analysis(threshold: Optional[float] = Query(default=None, ge=0), conn=Depends(get_db)):
    if threshold is None:
        threshold = settings.allocation_drift_threshold_pct
    return analyze_drift(conn, threshold).to_dict()

@router.get('/alerts', response_model=list[Alert], tags=["Alerts"])
def alerts_list(status: Optional[str] = None, alert_type: Optional[str] = None, client_id: Optional[str] = None,
                conn=Depends(get_db)):
    return list_alerts(conn, status=status, alert_type=alert_type, client_id=client_id)

@router.get('/alerts/summary', tags=["Alerts"])
def alerts_summary(conn=Depends(get_db)):
    return alert_summary(conn)

_ALERT_ACTIONS = {
    'acknowledge': acknowledge_alert,
    'resolve': resolve_alert,
    'dismiss': dismiss_alert,
}

@router.post('/alerts/{alert_id}/{action}', response_model=Alert, tags=["Alerts"])
def alert_action(alert_id: str, action: str, req: Optional[AlertAction] = None, conn=Depends(get_db)):
    fn = _ALERT_ACTIONS.get(action)
    if fn is None:
        raise HTTPException(404, 'action must be acknowledge|resolve|dismiss')
    try:
        return fn(conn, alert_id, req.by if req else None)
    except (NotFoundError, ConflictError) as exc:
        raise _http_error(exc)

@router.post(
    '/jobs/{job_type}',
    response_model=JobTriggered,
    status_code=202,
    summary="Trigger job",
    description="Starts a job run in the background and returns the run_id.",
    tags=["Jobs"],
)
def trigger_job_route(job_type: str, background: BackgroundTasks):
    if job_type not in JOB_TYPES:
        raise HTTPException(404, f'job_type must be one of {"|".join(JOB_TYPES)}')
    run_id = trigger_job(background, job_type)
    return JobTriggered(run_id=run_id, job_type=job_type)

@router.get('/jobs/runs', response_model=list[JobRunStatus], tags=["Jobs"])
def job_runs(job_type: Optional[str] = None, limit: int = Query(50, ge=1, le=500), conn=Depends(get_db)):
    if job_type is not None and job_type not in JOB_TYPES:
        raise HTTPException(404, f'job_type must be one of {"|".join(JOB_TYPES)}')
    return list_runs(conn, job_type, limit)

@router.get('/jobs/runs/{run_id}', response_model=JobRunStatus, tags=["Jobs"])
def job_run_status(run_id: str, conn=Depends(get_db)):
    run = get_run_status(conn, run_id)
    if not run:
        raise HTTPException(404, 'run not found')
    return run
