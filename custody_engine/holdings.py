"""Custody holdings (wallets and traditional accounts) and their balance snapshots.

Snapshots are upserted in place by natural key on every sync; there is no
balance history. Valuation and alert sweeps read them through a BalanceSource.
"""
from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import structlog

from .errors import UnsupportedCurrencyError
from .utils import now_utc_iso, parse_iso

log = structlog.get_logger()

WALLET = "Wallet"
ACCOUNT = "Account"
ASSET_TYPES = (WALLET, ACCOUNT)

# Account balance types that carry the holding's value, in order of preference.
VALUE_BALANCE_TYPES = ("CURRENT", "AVAILABLE")


@dataclass(frozen=True)
class WalletHolding:
    id: str
    wallet_address: str
    label: Optional[str] = None
    supported_chains: tuple[str, ...] = ()
    status: str = "Active"

    @property
    def display_name(self) -> str:
        return self.label or self.wallet_address


@dataclass(frozen=True)
class AccountHolding:
    id: str
    external_account_id: Optional[str] = None
    institution_name: Optional[str] = None
    label: Optional[str] = None
    status: str = "Active"
    last_sync_at: Optional[datetime] = None
    sync_status: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or self.institution_name or "Unknown Account"


@dataclass(frozen=True)
class WalletBalanceSnapshot:
    chain: str
    token_symbol: str
    balance: float
    balance_usd: Optional[float] = None
    token_address: str = ""
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class AccountBalanceSnapshot:
    balance_type: str
    currency: str
    amount: float
    last_updated: Optional[datetime] = None


class BalanceSource(Protocol):
    def get_wallet_balances(self, wallet_id: str) -> list[WalletBalanceSnapshot]: ...

    def get_account_balance(self, account_id: str) -> Optional[AccountBalanceSnapshot]: ...


class CurrencyConverter(Protocol):
    def to_usd(self, amount: float, currency: str) -> float: ...


@dataclass
class StaticRateConverter:
    """Fixed rate table; USD passes through unchanged."""

    rates: dict[str, float] = field(default_factory=dict)

    def to_usd(self, amount: float, currency: str) -> float:
        code = (currency or "USD").upper()
        if code == "USD":
            return float(amount)
        rate = self.rates.get(code)
        if rate is None:
            raise UnsupportedCurrencyError(code)
        return float(amount) * rate


class StoreBalanceSource:
    """Reads the persisted snapshots written by the sync jobs."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_wallet_balances(self, wallet_id: str) -> list[WalletBalanceSnapshot]:
        rows = self.conn.execute(
            """
            SELECT chain, token_symbol, balance, balance_usd, token_address, last_updated_utc
            FROM wallet_balances WHERE wallet_id=?
            ORDER BY chain, token_address
            """,
            (wallet_id,),
        ).fetchall()
        return [
            WalletBalanceSnapshot(
                chain=r[0],
                token_symbol=r[1],
                balance=r[2],
                balance_usd=r[3],
                token_address=r[4],
                last_updated=parse_iso(r[5]),
            )
            for r in rows
        ]

    def get_account_balance(self, account_id: str) -> Optional[AccountBalanceSnapshot]:
        rows = self.conn.execute(
            """
            SELECT balance_type, currency, amount, last_updated_utc
            FROM account_balances WHERE account_id=?
            ORDER BY last_updated_utc DESC
            """,
            (account_id,),
        ).fetchall()
        snaps = [AccountBalanceSnapshot(r[0], r[1], r[2], parse_iso(r[3])) for r in rows]
        for snap in snaps:
            if snap.balance_type.upper() in VALUE_BALANCE_TYPES:
                return snap
        return None


def wallet_value_usd(snapshots: list[WalletBalanceSnapshot]) -> float:
    return float(sum(s.balance_usd or 0.0 for s in snapshots))

def account_value_usd(snapshot: Optional[AccountBalanceSnapshot], converter: CurrencyConverter) -> float:
    if snapshot is None:
        return 0.0
    return converter.to_usd(snapshot.amount, snapshot.currency)

def holding_value_usd(source: BalanceSource, asset_type: str, asset_id: str, converter: CurrencyConverter) -> float:
    if asset_type == WALLET:
        return wallet_value_usd(source.get_wallet_balances(asset_id))
    return account_value_usd(source.get_account_balance(asset_id), converter)


# Holding repository

def _wallet_from_row(r) -> WalletHolding:
    return WalletHolding(
        id=r[0],
        wallet_address=r[1],
        label=r[2],
        supported_chains=tuple(json.loads(r[3] or "[]")),
        status=r[4],
    )

def _account_from_row(r) -> AccountHolding:
    return AccountHolding(
        id=r[0],
        external_account_id=r[1],
        institution_name=r[2],
        label=r[3],
        status=r[4],
        last_sync_at=parse_iso(r[5]),
        sync_status=r[6],
    )

_WALLET_COLS = "id, wallet_address, label, supported_chains, status"
_ACCOUNT_COLS = "id, external_account_id, institution_name, label, status, last_sync_at_utc, sync_status"

def list_active_wallets(conn: sqlite3.Connection) -> list[WalletHolding]:
    rows = conn.execute(
        f"SELECT {_WALLET_COLS} FROM custody_wallets WHERE status='Active' ORDER BY created_at_utc, id"
    ).fetchall()
    return [_wallet_from_row(r) for r in rows]

def list_active_accounts(conn: sqlite3.Connection) -> list[AccountHolding]:
    rows = conn.execute(
        f"SELECT {_ACCOUNT_COLS} FROM traditional_accounts WHERE status='Active' ORDER BY created_at_utc, id"
    ).fetchall()
    return [_account_from_row(r) for r in rows]

def get_wallet(conn: sqlite3.Connection, wallet_id: str) -> Optional[WalletHolding]:
    row = conn.execute(f"SELECT {_WALLET_COLS} FROM custody_wallets WHERE id=?", (wallet_id,)).fetchone()
    return _wallet_from_row(row) if row else None

def get_account(conn: sqlite3.Connection, account_id: str) -> Optional[AccountHolding]:
    row = conn.execute(f"SELECT {_ACCOUNT_COLS} FROM traditional_accounts WHERE id=?", (account_id,)).fetchone()
    return _account_from_row(row) if row else None

def holding_exists(conn: sqlite3.Connection, asset_type: str, asset_id: str) -> bool:
    table = "custody_wallets" if asset_type == WALLET else "traditional_accounts"
    return conn.execute(f"SELECT 1 FROM {table} WHERE id=?", (asset_id,)).fetchone() is not None

def holding_label(conn: sqlite3.Connection, asset_type: str, asset_id: str) -> str:
    if asset_type == WALLET:
        wallet = get_wallet(conn, asset_id)
        return wallet.display_name if wallet else asset_id
    account = get_account(conn, asset_id)
    return account.display_name if account else asset_id

def latest_wallet_update(conn: sqlite3.Connection, wallet_id: str) -> Optional[datetime]:
    row = conn.execute(
        "SELECT MAX(last_updated_utc) FROM wallet_balances WHERE wallet_id=?",
        (wallet_id,),
    ).fetchone()
    return parse_iso(row[0]) if row else None

def total_wallet_value_usd(conn: sqlite3.Connection) -> float:
    row = conn.execute("SELECT COALESCE(SUM(COALESCE(balance_usd, 0)), 0) FROM wallet_balances").fetchone()
    return float(row[0] or 0.0)

def total_account_value_usd(conn: sqlite3.Connection, converter: CurrencyConverter) -> float:
    source = StoreBalanceSource(conn)
    total = 0.0
    for (account_id,) in conn.execute("SELECT DISTINCT account_id FROM account_balances").fetchall():
        try:
            total += account_value_usd(source.get_account_balance(account_id), converter)
        except UnsupportedCurrencyError as exc:
            log.warning("account_value_skipped", account_id=account_id, currency=exc.currency)
    return total


def list_active_client_ids(conn: sqlite3.Connection) -> list[str]:
    return [r[0] for r in conn.execute("SELECT id FROM clients WHERE status='Active' ORDER BY created_at_utc, id").fetchall()]

def get_client(conn: sqlite3.Connection, client_id: str) -> Optional[dict]:
    row = conn.execute("SELECT id, name, email, status FROM clients WHERE id=?", (client_id,)).fetchone()
    if not row:
        return None
    return {"id": row[0], "name": row[1], "email": row[2], "status": row[3]}


# Writers used by the sync jobs and by seeding scripts

def upsert_client(conn: sqlite3.Connection, name: str, client_id: str | None = None, email: str | None = None,
                  status: str = "Active", clock=None) -> str:
    client_id = client_id or str(uuid.uuid4())
    now = now_utc_iso(clock)
    conn.execute(
        """
        INSERT INTO clients(id, name, email, status, created_at_utc, updated_at_utc) VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET name=excluded.name, email=excluded.email,
          status=excluded.status, updated_at_utc=excluded.updated_at_utc
        """,
        (client_id, name, email, status, now, now),
    )
    return client_id

def create_wallet(conn: sqlite3.Connection, wallet_address: str, label: str | None = None,
                  supported_chains: list[str] | None = None, wallet_id: str | None = None,
                  status: str = "Active", clock=None) -> str:
    wallet_id = wallet_id or str(uuid.uuid4())
    now = now_utc_iso(clock)
    conn.execute(
        """
        INSERT INTO custody_wallets(id, wallet_address, label, supported_chains, status, created_at_utc, updated_at_utc)
        VALUES (?,?,?,?,?,?,?)
        """,
        (wallet_id, wallet_address, label, json.dumps(supported_chains or []), status, now, now),
    )
    return wallet_id

def create_account(conn: sqlite3.Connection, external_account_id: str | None = None, institution_name: str | None = None,
                   label: str | None = None, account_id: str | None = None, status: str = "Active",
                   last_sync_at_utc: str | None = None, clock=None) -> str:
    account_id = account_id or str(uuid.uuid4())
    now = now_utc_iso(clock)
    conn.execute(
        """
        INSERT INTO traditional_accounts(id, external_account_id, institution_name, label, status,
          last_sync_at_utc, created_at_utc, updated_at_utc)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (account_id, external_account_id, institution_name, label, status, last_sync_at_utc, now, now),
    )
    return account_id

def upsert_wallet_balance(conn: sqlite3.Connection, wallet_id: str, snap: WalletBalanceSnapshot, now_utc: str):
    conn.execute(
        """
        INSERT INTO wallet_balances(wallet_id, chain, token_address, token_symbol, balance, balance_usd, last_updated_utc)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(wallet_id, chain, token_address) DO UPDATE SET
          token_symbol=excluded.token_symbol, balance=excluded.balance,
          balance_usd=excluded.balance_usd, last_updated_utc=excluded.last_updated_utc
        """,
        (wallet_id, snap.chain, snap.token_address or "", snap.token_symbol, float(snap.balance),
         None if snap.balance_usd is None else float(snap.balance_usd), now_utc),
    )

def upsert_account_balance(conn: sqlite3.Connection, account_id: str, snap: AccountBalanceSnapshot, now_utc: str):
    conn.execute(
        """
        INSERT INTO account_balances(account_id, balance_type, currency, amount, last_updated_utc)
        VALUES (?,?,?,?,?)
        ON CONFLICT(account_id, balance_type) DO UPDATE SET
          currency=excluded.currency, amount=excluded.amount, last_updated_utc=excluded.last_updated_utc
        """,
        (account_id, snap.balance_type.upper(), snap.currency.upper(), float(snap.amount), now_utc),
    )

def mark_account_synced(conn: sqlite3.Connection, account_id: str, now_utc: str):
    conn.execute(
        """
        UPDATE traditional_accounts
        SET last_sync_at_utc=?, sync_status='Success', sync_error_message=NULL, updated_at_utc=?
        WHERE id=?
        """,
        (now_utc, now_utc, account_id),
    )

def mark_account_sync_error(conn: sqlite3.Connection, account_id: str, err: str, now_utc: str):
    conn.execute(
        "UPDATE traditional_accounts SET sync_status='Error', sync_error_message=?, updated_at_utc=? WHERE id=?",
        (err[:1000], now_utc, account_id),
    )
