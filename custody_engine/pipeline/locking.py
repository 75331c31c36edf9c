import sqlite3
from datetime import timedelta

from ..db import transaction
from ..utils import SystemClock, parse_iso

def acquire_lock(conn: sqlite3.Connection, name: str, owner: str, ttl_seconds: int = 7200, clock=None) -> bool:
    """Take the named lock unless a live holder has it; an expired lock is taken over."""
    now = (clock or SystemClock()).now()
    exp = now + timedelta(seconds=ttl_seconds)
    with transaction(conn):
        row = conn.execute("SELECT owner, expires_at_utc FROM locks WHERE name=?", (name,)).fetchone()
        if not row:
            conn.execute(
                "INSERT INTO locks(name, owner, acquired_at_utc, expires_at_utc) VALUES(?,?,?,?)",
                (name, owner, now.isoformat(), exp.isoformat()),
            )
            return True
        if parse_iso(row[1]) < now:
            conn.execute(
                "UPDATE locks SET owner=?, acquired_at_utc=?, expires_at_utc=? WHERE name=?",
                (owner, now.isoformat(), exp.isoformat(), name),
            )
            return True
        return False

def release_lock(conn: sqlite3.Connection, name: str, owner: str):
    conn.execute("DELETE FROM locks WHERE name=? AND owner=?", (name, owner))

def get_lock_holder(conn: sqlite3.Connection, name: str) -> str | None:
    row = conn.execute("SELECT owner FROM locks WHERE name=?", (name,)).fetchone()
    return row[0] if row else None
