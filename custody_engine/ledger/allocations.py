from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

import structlog

from ..db import transaction
from ..errors import ConflictError, NotFoundError, Result, ValidationError
from ..holdings import ASSET_TYPES, holding_exists
from ..utils import SystemClock, now_utc_iso, parse_date

log = structlog.get_logger()

PERCENTAGE = "Percentage"
FIXED_AMOUNT = "FixedAmount"
ALLOCATION_TYPES = (PERCENTAGE, FIXED_AMOUNT)


@dataclass(frozen=True)
class AllocationRecord:
    id: str
    client_id: str
    asset_type: str
    asset_id: str
    allocation_type: str
    allocation_value: float
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end_date is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "asset_type": self.asset_type,
            "asset_id": self.asset_id,
            "allocation_type": self.allocation_type,
            "allocation_value": self.allocation_value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "notes": self.notes,
        }


_COLS = "id, client_id, asset_type, asset_id, allocation_type, allocation_value, start_date, end_date, notes"

def _from_row(r) -> AllocationRecord:
    return AllocationRecord(
        id=r[0],
        client_id=r[1],
        asset_type=r[2],
        asset_id=r[3],
        allocation_type=r[4],
        allocation_value=float(r[5]),
        start_date=parse_date(r[6]),
        end_date=parse_date(r[7]),
        notes=r[8],
    )

def get_active_allocations(conn: sqlite3.Connection, client_id: str | None = None) -> list[AllocationRecord]:
    if client_id is None:
        rows = conn.execute(
            f"SELECT {_COLS} FROM client_asset_allocations WHERE end_date IS NULL ORDER BY created_at_utc, id"
        ).fetchall()
    else:
        rows = conn.execute(
            f"SELECT {_COLS} FROM client_asset_allocations WHERE end_date IS NULL AND client_id=? ORDER BY created_at_utc, id",
            (client_id,),
        ).fetchall()
    return [_from_row(r) for r in rows]

def list_allocations(conn: sqlite3.Connection, client_id: str | None = None, include_ended: bool = False) -> list[AllocationRecord]:
    clauses = []
    params: list = []
    if client_id is not None:
        clauses.append("client_id=?")
        params.append(client_id)
    if not include_ended:
        clauses.append("end_date IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT {_COLS} FROM client_asset_allocations {where} ORDER BY start_date DESC, created_at_utc DESC",
        params,
    ).fetchall()
    return [_from_row(r) for r in rows]

def get_allocation(conn: sqlite3.Connection, allocation_id: str) -> AllocationRecord | None:
    row = conn.execute(f"SELECT {_COLS} FROM client_asset_allocations WHERE id=?", (allocation_id,)).fetchone()
    return _from_row(row) if row else None

def validate_allocation_value(allocation_type: str, allocation_value) -> float:
    if allocation_type not in ALLOCATION_TYPES:
        raise ValidationError("allocation_type", "Allocation type must be 'Percentage' or 'FixedAmount'")
    try:
        value = float(allocation_value)
    except (TypeError, ValueError):
        raise ValidationError("allocation_value", "Allocation value must be a number")
    if value <= 0:
        raise ValidationError("allocation_value", "Allocation value must be greater than 0")
    if allocation_type == PERCENTAGE and value > 100:
        raise ValidationError("allocation_value", "Percentage allocation must be between 0 and 100")
    return value

def _active_percentage_total(conn: sqlite3.Connection, asset_type: str, asset_id: str) -> float:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(allocation_value), 0) FROM client_asset_allocations
        WHERE asset_type=? AND asset_id=? AND allocation_type=? AND end_date IS NULL
        """,
        (asset_type, asset_id, PERCENTAGE),
    ).fetchone()
    return float(row[0] or 0.0)

def create_allocation(
    conn: sqlite3.Connection,
    *,
    client_id: str,
    asset_type: str,
    asset_id: str,
    allocation_type: str,
    allocation_value,
    start_date=None,
    notes: str | None = None,
    clock=None,
) -> AllocationRecord:
    """Create the current allocation for a (client, holding) pairing.

    Raises ValidationError for bad input, NotFoundError when the client is
    missing or inactive or the holding does not exist, and ConflictError when
    an active allocation already exists for the pairing or the holding's
    active percentages would exceed 100.
    """
    clock = clock or SystemClock()
    if asset_type not in ASSET_TYPES:
        raise ValidationError("asset_type", "Asset type must be 'Wallet' or 'Account'")
    if not asset_id:
        raise ValidationError("asset_id", "Asset ID is required")
    value = validate_allocation_value(allocation_type, allocation_value)
    try:
        start = parse_date(start_date) or clock.now().date()
    except ValueError:
        raise ValidationError("start_date", "Start date must be an ISO date")

    with transaction(conn):
        client = conn.execute("SELECT status FROM clients WHERE id=?", (client_id,)).fetchone()
        if not client or client[0] != "Active":
            raise NotFoundError("Client not found or inactive")
        if not holding_exists(conn, asset_type, asset_id):
            raise NotFoundError(f"{asset_type} not found")

        existing = conn.execute(
            """
            SELECT id FROM client_asset_allocations
            WHERE client_id=? AND asset_type=? AND asset_id=? AND end_date IS NULL
            """,
            (client_id, asset_type, asset_id),
        ).fetchone()
        if existing:
            raise ConflictError("An active allocation already exists for this client and asset")

        if allocation_type == PERCENTAGE:
            allocated = _active_percentage_total(conn, asset_type, asset_id)
            if allocated + value > 100:
                raise ConflictError(
                    f"Total percentage allocation would exceed 100% (current: {allocated:g}%)"
                )

        record = AllocationRecord(
            id=str(uuid.uuid4()),
            client_id=client_id,
            asset_type=asset_type,
            asset_id=asset_id,
            allocation_type=allocation_type,
            allocation_value=value,
            start_date=start,
            notes=notes,
        )
        now = now_utc_iso(clock)
        try:
            conn.execute(
                """
                INSERT INTO client_asset_allocations
                  (id, client_id, asset_type, asset_id, allocation_type, allocation_value,
                   start_date, end_date, notes, created_at_utc, updated_at_utc)
                VALUES (?,?,?,?,?,?,?,NULL,?,?,?)
                """,
                (record.id, client_id, asset_type, asset_id, allocation_type, value,
                 start.isoformat(), notes, now, now),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("An active allocation already exists for this client and asset") from exc

    log.info("allocation_created", allocation_id=record.id, client_id=client_id,
             asset_type=asset_type, asset_id=asset_id, allocation_type=allocation_type, value=value)
    return record

def end_allocation(conn: sqlite3.Connection, allocation_id: str, end_date=None, clock=None) -> AllocationRecord:
    """Set end_date on an active allocation. Ended allocations are never reopened."""
    clock = clock or SystemClock()
    today = clock.now().date()
    try:
        end = parse_date(end_date) or today
    except ValueError:
        raise ValidationError("end_date", "End date must be an ISO date")

    with transaction(conn):
        record = get_allocation(conn, allocation_id)
        if record is None:
            raise NotFoundError("Allocation not found")
        if record.end_date is not None:
            raise NotFoundError("Allocation is already ended")
        if end < record.start_date:
            raise ValidationError("end_date", "End date cannot be before start date")
        if end > today:
            raise ValidationError("end_date", "End date cannot be in the future")
        cur = conn.execute(
            "UPDATE client_asset_allocations SET end_date=?, updated_at_utc=? WHERE id=? AND end_date IS NULL",
            (end.isoformat(), now_utc_iso(clock), allocation_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Allocation is already ended")

    log.info("allocation_ended", allocation_id=allocation_id, client_id=record.client_id, end_date=end.isoformat())
    return replace(record, end_date=end)

def find_oversubscribed_holdings(conn: sqlite3.Connection) -> list[dict]:
    """Holdings whose active percentage allocations add up to more than 100%."""
    rows = conn.execute(
        """
        SELECT asset_type, asset_id, SUM(allocation_value) AS total, COUNT(*) AS n
        FROM client_asset_allocations
        WHERE end_date IS NULL AND allocation_type=?
        GROUP BY asset_type, asset_id
        HAVING SUM(allocation_value) > 100
        ORDER BY total DESC
        """,
        (PERCENTAGE,),
    ).fetchall()
    out = []
    for asset_type, asset_id, total, count in rows:
        allocations = conn.execute(
            f"""
            SELECT {_COLS} FROM client_asset_allocations
            WHERE end_date IS NULL AND allocation_type=? AND asset_type=? AND asset_id=?
            ORDER BY start_date
            """,
            (PERCENTAGE, asset_type, asset_id),
        ).fetchall()
        out.append(
            {
                "asset_type": asset_type,
                "asset_id": asset_id,
                "total_percentage": float(total),
                "allocation_count": int(count),
                "allocations": [_from_row(r).to_dict() for r in allocations],
            }
        )
    return out


# Typed outcomes for the CRUD surface

def create_allocation_outcome(conn: sqlite3.Connection, **kwargs) -> Result[AllocationRecord]:
    try:
        return Result.success(create_allocation(conn, **kwargs))
    except (ValidationError, ConflictError, NotFoundError) as exc:
        log.info("allocation_create_rejected", kind=type(exc).__name__, reason=str(exc))
        return Result.failure(exc)

def end_allocation_outcome(conn: sqlite3.Connection, allocation_id: str, end_date=None, clock=None) -> Result[AllocationRecord]:
    try:
        return Result.success(end_allocation(conn, allocation_id, end_date=end_date, clock=clock), key=allocation_id)
    except (ValidationError, NotFoundError) as exc:
        log.info("allocation_end_rejected", allocation_id=allocation_id, kind=type(exc).__name__, reason=str(exc))
        return Result.failure(exc, key=allocation_id)
