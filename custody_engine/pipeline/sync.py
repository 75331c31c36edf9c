"""Balance sync job bodies.

Each holding is fetched and written on its own; a provider failure for one
wallet or account is recorded and the batch moves on.
"""
from __future__ import annotations

import sqlite3

import httpx
import structlog

from ..db import transaction
from ..errors import TransientInfrastructureError
from ..holdings import (
    AccountHolding,
    WalletHolding,
    list_active_accounts,
    list_active_wallets,
    mark_account_sync_error,
    mark_account_synced,
    upsert_account_balance,
    upsert_wallet_balance,
)
from ..providers.common import BlockchainDataProvider, OpenFinanceProvider
from ..utils import now_utc_iso
from .batch import for_each_isolated, raise_if_all_failed_transient, summarize

log = structlog.get_logger()


def _fetch(fn, *args):
    try:
        return fn(*args)
    except (httpx.HTTPError, OSError) as exc:
        raise TransientInfrastructureError(str(exc)) from exc

def sync_wallets(conn: sqlite3.Connection, provider: BlockchainDataProvider, clock=None) -> dict:
    wallets = list_active_wallets(conn)
    log.info("wallet_sync_started", wallets=len(wallets))

    def _sync(wallet: WalletHolding) -> int:
        balances = _fetch(provider.get_wallet_balances, wallet.wallet_address, wallet.supported_chains)
        now = now_utc_iso(clock)
        with transaction(conn):
            for snap in balances:
                upsert_wallet_balance(conn, wallet.id, snap, now)
        log.info("wallet_synced", wallet_id=wallet.id, balances=len(balances))
        return len(balances)

    results = for_each_isolated(wallets, _sync, key=lambda w: w.id, event="wallet_sync_failed")
    raise_if_all_failed_transient(results)
    summary = summarize(results)
    log.info("wallet_sync_done", **summary)
    return summary

def sync_accounts(conn: sqlite3.Connection, provider: OpenFinanceProvider, clock=None) -> dict:
    accounts = list_active_accounts(conn)
    log.info("account_sync_started", accounts=len(accounts))

    def _sync(account: AccountHolding) -> bool:
        if not account.external_account_id:
            raise ValueError("account has no external account id")
        snap = _fetch(provider.get_account_balance, account.external_account_id)
        now = now_utc_iso(clock)
        with transaction(conn):
            if snap is not None:
                upsert_account_balance(conn, account.id, snap, now)
            mark_account_synced(conn, account.id, now)
        log.info("account_synced", account_id=account.id, has_balance=snap is not None)
        return snap is not None

    def _mark_error(account: AccountHolding, exc: BaseException):
        mark_account_sync_error(conn, account.id, str(exc), now_utc_iso(clock))

    results = for_each_isolated(accounts, _sync, key=lambda a: a.id, event="account_sync_failed", on_error=_mark_error)
    raise_if_all_failed_transient(results)
    summary = summarize(results)
    log.info("account_sync_done", **summary)
    return summary
