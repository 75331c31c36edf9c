import json
import sqlite3

from ..utils import now_utc_iso

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

def start_run(conn: sqlite3.Connection, run_id: str, job_type: str, clock=None):
    conn.execute(
        "INSERT OR REPLACE INTO job_runs(run_id, job_type, status, attempts, started_at_utc) VALUES(?,?,?,?,?)",
        (run_id, job_type, RUNNING, 0, now_utc_iso(clock)),
    )

def record_attempt(conn: sqlite3.Connection, run_id: str, attempts: int):
    conn.execute("UPDATE job_runs SET attempts=? WHERE run_id=?", (attempts, run_id))

def finish_run_ok(conn: sqlite3.Connection, run_id: str, attempts: int, summary: dict | None = None, clock=None):
    conn.execute(
        "UPDATE job_runs SET finished_at_utc=?, status=?, attempts=?, summary_json=? WHERE run_id=?",
        (now_utc_iso(clock), SUCCEEDED, attempts, json.dumps(summary, default=str) if summary is not None else None, run_id),
    )

def finish_run_fail(conn: sqlite3.Connection, run_id: str, attempts: int, err: str, clock=None):
    conn.execute(
        "UPDATE job_runs SET finished_at_utc=?, status=?, attempts=?, error_message=? WHERE run_id=?",
        (now_utc_iso(clock), FAILED, attempts, err[:1000], run_id),
    )

def record_skipped_run(conn: sqlite3.Connection, run_id: str, job_type: str, reason: str, clock=None):
    now = now_utc_iso(clock)
    conn.execute(
        """
        INSERT OR REPLACE INTO job_runs(run_id, job_type, status, attempts, started_at_utc, finished_at_utc, error_message)
        VALUES(?,?,?,?,?,?,?)
        """,
        (run_id, job_type, SKIPPED, 0, now, now, reason),
    )

def get_run_status(conn: sqlite3.Connection, run_id: str):
    row = conn.execute(
        """
        SELECT run_id, job_type, status, attempts, started_at_utc, finished_at_utc, error_message, summary_json
        FROM job_runs WHERE run_id=?
        """,
        (run_id,),
    ).fetchone()
    if not row: return None
    return {
        'run_id': row[0], 'job_type': row[1], 'status': row[2], 'attempts': row[3],
        'started_at_utc': row[4], 'finished_at_utc': row[5], 'error_message': row[6],
        'summary': json.loads(row[7]) if row[7] else None,
    }

def list_runs(conn: sqlite3.Connection, job_type: str | None = None, limit: int = 50) -> list[dict]:
    if job_type:
        rows = conn.execute(
            "SELECT run_id FROM job_runs WHERE job_type=? ORDER BY started_at_utc DESC LIMIT ?", (job_type, limit)
        ).fetchall()
    else:
        rows = conn.execute("SELECT run_id FROM job_runs ORDER BY started_at_utc DESC LIMIT ?", (limit,)).fetchall()
    return [get_run_status(conn, r[0]) for r in rows]
