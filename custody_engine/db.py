import sqlite3
from contextlib import contextmanager
from pathlib import Path

def get_conn(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)  # autocommit
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

@contextmanager
def transaction(conn: sqlite3.Connection):
    """Commit everything written inside the block as one unit.

    Nested use joins the outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")

DDL = [
    """
CREATE TABLE IF NOT EXISTS clients (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  email TEXT,
  status TEXT NOT NULL DEFAULT 'Active',   -- 'Active'|'Inactive'
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",

    # Wallet holdings and their per-(chain, token) snapshots
    """
CREATE TABLE IF NOT EXISTS custody_wallets (
  id TEXT PRIMARY KEY,
  wallet_address TEXT NOT NULL,
  label TEXT,
  supported_chains TEXT NOT NULL DEFAULT '[]',   -- JSON list
  status TEXT NOT NULL DEFAULT 'Active',
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS wallet_balances (
  wallet_id TEXT NOT NULL REFERENCES custody_wallets(id) ON DELETE CASCADE,
  chain TEXT NOT NULL,
  token_address TEXT NOT NULL DEFAULT '',        -- '' for the native token
  token_symbol TEXT NOT NULL,
  balance REAL NOT NULL,
  balance_usd REAL,
  last_updated_utc TEXT NOT NULL,
  PRIMARY KEY (wallet_id, chain, token_address)
);
""",

    # Traditional account holdings and their per-balance-type snapshots
    """
CREATE TABLE IF NOT EXISTS traditional_accounts (
  id TEXT PRIMARY KEY,
  external_account_id TEXT,
  institution_name TEXT,
  label TEXT,
  status TEXT NOT NULL DEFAULT 'Active',
  last_sync_at_utc TEXT,
  sync_status TEXT,                 -- NULL|'Success'|'Error'
  sync_error_message TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS account_balances (
  account_id TEXT NOT NULL REFERENCES traditional_accounts(id) ON DELETE CASCADE,
  balance_type TEXT NOT NULL,       -- 'CURRENT'|'AVAILABLE'|'LIMIT'
  currency TEXT NOT NULL,
  amount REAL NOT NULL,
  last_updated_utc TEXT NOT NULL,
  PRIMARY KEY (account_id, balance_type)
);
""",

    # Client allocations over holdings
    """
CREATE TABLE IF NOT EXISTS client_asset_allocations (
  id TEXT PRIMARY KEY,
  client_id TEXT NOT NULL REFERENCES clients(id),
  asset_type TEXT NOT NULL,         -- 'Wallet'|'Account'
  asset_id TEXT NOT NULL,
  allocation_type TEXT NOT NULL,    -- 'Percentage'|'FixedAmount'
  allocation_value REAL NOT NULL,
  start_date TEXT NOT NULL,
  end_date TEXT,
  notes TEXT,
  created_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);
""",
    # Backstop for the one-active-allocation rule; the ledger checks first.
    """
CREATE UNIQUE INDEX IF NOT EXISTS ux_allocations_active
  ON client_asset_allocations(client_id, asset_type, asset_id)
  WHERE end_date IS NULL;
""",
    "CREATE INDEX IF NOT EXISTS ix_allocations_asset ON client_asset_allocations(asset_type, asset_id);",

    """
CREATE TABLE IF NOT EXISTS performance_metrics (
  client_id TEXT NOT NULL REFERENCES clients(id),
  calculation_date TEXT NOT NULL,
  total_value_usd REAL NOT NULL,
  crypto_value_usd REAL,
  traditional_value_usd REAL,
  roi REAL,
  profit_loss REAL,
  metrics_json TEXT,
  calculated_at_utc TEXT NOT NULL,
  PRIMARY KEY (client_id, calculation_date)
);
""",

    """
CREATE TABLE IF NOT EXISTS alerts (
  id TEXT PRIMARY KEY,
  alert_type TEXT NOT NULL,         -- 'LowBalance'|'AllocationDrift'|'SyncFailure'
  client_id TEXT,                   -- NULL for system-wide alerts
  severity TEXT NOT NULL,
  message TEXT NOT NULL,
  metadata_json TEXT,
  status TEXT NOT NULL DEFAULT 'Active',   -- 'Active'|'Acknowledged'|'Resolved'|'Dismissed'
  created_at_utc TEXT NOT NULL,
  acknowledged_at_utc TEXT,
  acknowledged_by TEXT,
  resolved_at_utc TEXT,
  resolved_by TEXT
);
""",
    "CREATE INDEX IF NOT EXISTS ix_alerts_identity ON alerts(alert_type, client_id, status);",

    """
CREATE TABLE IF NOT EXISTS job_runs (
  run_id TEXT PRIMARY KEY,
  job_type TEXT NOT NULL,
  status TEXT NOT NULL,             -- 'running'|'succeeded'|'failed'|'skipped'
  attempts INTEGER NOT NULL DEFAULT 0,
  started_at_utc TEXT NOT NULL,
  finished_at_utc TEXT,
  error_message TEXT,
  summary_json TEXT
);
""",
    "CREATE INDEX IF NOT EXISTS ix_job_runs_type_time ON job_runs(job_type, started_at_utc DESC);",

    """
CREATE TABLE IF NOT EXISTS locks(
  name TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  acquired_at_utc TEXT NOT NULL,
  expires_at_utc TEXT NOT NULL
);
""",
]

def migrate(conn: sqlite3.Connection):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    cols = {row[1] for row in cur.execute("PRAGMA table_info(traditional_accounts)").fetchall()}
    if cols and "sync_error_message" not in cols:
        cur.execute("ALTER TABLE traditional_accounts ADD COLUMN sync_error_message TEXT")
    metric_cols = {row[1] for row in cur.execute("PRAGMA table_info(performance_metrics)").fetchall()}
    for col, ddl in [
        ("crypto_value_usd", "ALTER TABLE performance_metrics ADD COLUMN crypto_value_usd REAL"),
        ("traditional_value_usd", "ALTER TABLE performance_metrics ADD COLUMN traditional_value_usd REAL"),
        ("metrics_json", "ALTER TABLE performance_metrics ADD COLUMN metrics_json TEXT"),
    ]:
        if metric_cols and col not in metric_cols:
            cur.execute(ddl)
