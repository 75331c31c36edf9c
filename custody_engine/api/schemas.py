from datetime import date
from pydantic import BaseModel
from typing import Any, Optional, Literal

class AllocationCreate(BaseModel):
    client_id: str
    asset_type: str
    asset_id: str
    allocation_type: str
    allocation_value: float
    start_date: Optional[date] = None
    notes: Optional[str] = None

class AllocationEnd(BaseModel):
    end_date: Optional[date] = None

class Allocation(BaseModel):
    id: str
    client_id: str
    asset_type: str
    asset_id: str
    allocation_type: str
    allocation_value: float
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = None

class AlertAction(BaseModel):
    by: Optional[str] = None

class Alert(BaseModel):
    id: str
    alert_type: str
    client_id: Optional[str] = None
    severity: str
    message: str
    metadata: Optional[dict[str, Any]] = None
    status: str
    created_at_utc: str
    acknowledged_at_utc: Optional[str] = None
    acknowledged_by: Optional[str] = None
    resolved_at_utc: Optional[str] = None
    resolved_by: Optional[str] = None

class JobTriggered(BaseModel):
    run_id: str
    job_type: str

class JobRunStatus(BaseModel):
    run_id: str
    job_type: str
    status: Literal['running','succeeded','failed','skipped']
    attempts: int
    started_at_utc: str
    finished_at_utc: Optional[str] = None
    error_message: Optional[str] = None
    summary: Optional[dict[str, Any]] = None
