from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Callable

import structlog

from ..db import transaction
from ..errors import ConflictError, NotFoundError
from ..utils import now_utc_iso
from .constants import (
    ALERT_STATUSES,
    STATUS_ACKNOWLEDGED,
    STATUS_ACTIVE,
    STATUS_DISMISSED,
    STATUS_RESOLVED,
)

log = structlog.get_logger()

_COLS = (
    "id, alert_type, client_id, severity, message, metadata_json, status, created_at_utc, "
    "acknowledged_at_utc, acknowledged_by, resolved_at_utc, resolved_by"
)


@dataclass(frozen=True)
class AlertKey:
    alert_type: str
    client_id: str | None = None


@dataclass
class AlertRaise:
    alert: dict
    created: bool


def _from_row(r) -> dict:
    return {
        "id": r[0],
        "alert_type": r[1],
        "client_id": r[2],
        "severity": r[3],
        "message": r[4],
        "metadata": json.loads(r[5]) if r[5] else None,
        "status": r[6],
        "created_at_utc": r[7],
        "acknowledged_at_utc": r[8],
        "acknowledged_by": r[9],
        "resolved_at_utc": r[10],
        "resolved_by": r[11],
    }

def _dump(metadata: dict | None) -> str | None:
    return json.dumps(metadata, default=str) if metadata is not None else None

def get_alert_by_id(conn: sqlite3.Connection, alert_id: str) -> dict | None:
    row = conn.execute(f"SELECT {_COLS} FROM alerts WHERE id=?", (alert_id,)).fetchone()
    return _from_row(row) if row else None

def get_open_alert(conn: sqlite3.Connection, key: AlertKey) -> dict | None:
    """The live (non-Resolved) alert for an identity, if any."""
    row = conn.execute(
        f"""
        SELECT {_COLS} FROM alerts
        WHERE alert_type=? AND client_id IS ? AND status != ?
        ORDER BY created_at_utc DESC LIMIT 1
        """,
        (key.alert_type, key.client_id, STATUS_RESOLVED),
    ).fetchone()
    return _from_row(row) if row else None

def create_alert(conn: sqlite3.Connection, key: AlertKey, severity: str, message: str,
                 metadata: dict | None, now_utc: str) -> str:
    alert_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO alerts (id, alert_type, client_id, severity, message, metadata_json, status, created_at_utc)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (alert_id, key.alert_type, key.client_id, severity, message, _dump(metadata), STATUS_ACTIVE, now_utc),
    )
    return alert_id

def update_alert_on_trigger(conn: sqlite3.Connection, alert_id: str, severity: str, message: str,
                            metadata: dict | None, now_utc: str):
    conn.execute(
        "UPDATE alerts SET severity=?, message=?, metadata_json=?, created_at_utc=? WHERE id=?",
        (severity, message, _dump(metadata), now_utc, alert_id),
    )

def upsert_alert(conn: sqlite3.Connection, key: AlertKey, mutator: Callable[[dict | None], dict], clock=None) -> AlertRaise:
    """Create-or-update the live alert for `key` inside one transaction.

    `mutator` receives the existing live alert (or None) and returns the
    fields to write: severity, message, metadata. An existing alert keeps its
    id and status; only those fields and the freshness timestamp change.
    """
    now = now_utc_iso(clock)
    with transaction(conn):
        existing = get_open_alert(conn, key)
        fields = mutator(existing)
        if existing:
            update_alert_on_trigger(conn, existing["id"], fields["severity"], fields["message"], fields.get("metadata"), now)
            alert_id, created = existing["id"], False
        else:
            alert_id = create_alert(conn, key, fields["severity"], fields["message"], fields.get("metadata"), now)
            created = True
        alert = get_alert_by_id(conn, alert_id)
    if created:
        log.info("alert_created", alert_id=alert_id, alert_type=key.alert_type, client_id=key.client_id,
                 severity=alert["severity"], message=alert["message"])
    else:
        log.info("alert_refreshed", alert_id=alert_id, alert_type=key.alert_type, client_id=key.client_id,
                 severity=alert["severity"], message=alert["message"])
    return AlertRaise(alert=alert, created=created)

def raise_or_refresh(conn: sqlite3.Connection, alert_type: str, client_id: str | None, severity: str,
                     message: str, metadata: dict | None = None, clock=None) -> AlertRaise:
    return upsert_alert(
        conn,
        AlertKey(alert_type, client_id),
        lambda _existing: {"severity": severity, "message": message, "metadata": metadata},
        clock=clock,
    )

def list_alerts(conn: sqlite3.Connection, status: str | None = None, alert_type: str | None = None,
                client_id: str | None = None) -> list[dict]:
    clauses: list[str] = []
    params: list = []
    if status is not None:
        clauses.append("status=?")
        params.append(status)
    if alert_type is not None:
        clauses.append("alert_type=?")
        params.append(alert_type)
    if client_id is not None:
        clauses.append("client_id=?")
        params.append(client_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(f"SELECT {_COLS} FROM alerts {where} ORDER BY created_at_utc DESC", params).fetchall()
    return [_from_row(r) for r in rows]

def alert_summary(conn: sqlite3.Connection) -> dict:
    by_status = {s: 0 for s in ALERT_STATUSES}
    for status, count in conn.execute("SELECT status, COUNT(*) FROM alerts GROUP BY status").fetchall():
        by_status[status] = count
    by_severity = dict(conn.execute("SELECT severity, COUNT(*) FROM alerts GROUP BY severity").fetchall())
    by_type = dict(conn.execute("SELECT alert_type, COUNT(*) FROM alerts GROUP BY alert_type").fetchall())
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_severity": by_severity,
        "by_type": by_type,
    }

def _require_live(conn: sqlite3.Connection, alert_id: str) -> dict:
    alert = get_alert_by_id(conn, alert_id)
    if alert is None:
        raise NotFoundError("Alert not found")
    if alert["status"] == STATUS_RESOLVED:
        raise NotFoundError("Alert is already resolved")
    return alert

def acknowledge_alert(conn: sqlite3.Connection, alert_id: str, who: str | None = None, clock=None) -> dict:
    with transaction(conn):
        alert = _require_live(conn, alert_id)
        if alert["status"] != STATUS_ACTIVE:
            raise ConflictError(f"Alert is {alert['status']}, only Active alerts can be acknowledged")
        conn.execute(
            "UPDATE alerts SET status=?, acknowledged_at_utc=?, acknowledged_by=? WHERE id=?",
            (STATUS_ACKNOWLEDGED, now_utc_iso(clock), who, alert_id),
        )
    log.info("alert_acknowledged", alert_id=alert_id, by=who)
    return get_alert_by_id(conn, alert_id)

def resolve_alert(conn: sqlite3.Connection, alert_id: str, who: str | None = None, clock=None) -> dict:
    with transaction(conn):
        _require_live(conn, alert_id)
        conn.execute(
            "UPDATE alerts SET status=?, resolved_at_utc=?, resolved_by=? WHERE id=?",
            (STATUS_RESOLVED, now_utc_iso(clock), who, alert_id),
        )
    log.info("alert_resolved", alert_id=alert_id, by=who)
    return get_alert_by_id(conn, alert_id)

def dismiss_alert(conn: sqlite3.Connection, alert_id: str, who: str | None = None, clock=None) -> dict:
    with transaction(conn):
        alert = _require_live(conn, alert_id)
        if alert["status"] == STATUS_DISMISSED:
            raise ConflictError("Alert is already dismissed")
        conn.execute("UPDATE alerts SET status=? WHERE id=?", (STATUS_DISMISSED, alert_id))
    log.info("alert_dismissed", alert_id=alert_id, by=who)
    return get_alert_by_id(conn, alert_id)
