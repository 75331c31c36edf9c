from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

import structlog

from ..config import settings
from ..drift.detector import DriftFinding, alert_severity_for_drift, detect_drift
from ..holdings import (
    AccountHolding,
    BalanceSource,
    CurrencyConverter,
    StoreBalanceSource,
    WalletHolding,
    account_value_usd,
    latest_wallet_update,
    list_active_accounts,
    list_active_wallets,
    wallet_value_usd,
)
from ..pipeline.batch import for_each_isolated, summarize
from ..utils import SystemClock, hours_between
from ..valuation.engine import default_converter
from .constants import (
    ALLOCATION_DRIFT,
    LOW_BALANCE,
    SEVERITY_HIGH,
    SEVERITY_WARNING,
    SYNC_FAILURE,
)
from .storage import AlertRaise, raise_or_refresh

log = structlog.get_logger()


@dataclass
class SweepResult:
    name: str
    checked: int = 0
    raised: int = 0
    created: list[dict] = field(default_factory=list)
    failed_keys: list[str] = field(default_factory=list)


@dataclass
class AlertSweepSummary:
    sweeps: list[SweepResult] = field(default_factory=list)

    @property
    def created(self) -> list[dict]:
        return [a for s in self.sweeps for a in s.created]

    @property
    def raised(self) -> int:
        return sum(s.raised for s in self.sweeps)

    def to_dict(self) -> dict:
        return {
            "raised": self.raised,
            "created": len(self.created),
            "sweeps": {
                s.name: {"checked": s.checked, "raised": s.raised, "created": len(s.created), "failed": s.failed_keys}
                for s in self.sweeps
            },
        }


def _fmt_money(x: float) -> str:
    return f"${float(x):,.2f}"

def _collect(name: str, results) -> SweepResult:
    out = SweepResult(name=name, checked=len(results))
    for r in results:
        if not r.ok or r.value is None:
            continue
        raised: AlertRaise = r.value
        out.raised += 1
        if raised.created:
            out.created.append(raised.alert)
    out.failed_keys = summarize(results)["failed_keys"]
    log.info("alert_sweep_done", sweep=name, checked=out.checked, raised=out.raised,
             created=len(out.created), failed=len(out.failed_keys))
    return out

def check_low_wallet_balances(conn: sqlite3.Connection, source: BalanceSource | None = None,
                              threshold: float | None = None, clock=None) -> SweepResult:
    source = source or StoreBalanceSource(conn)
    threshold = settings.low_balance_threshold_usd if threshold is None else threshold

    def _check(wallet: WalletHolding):
        total = wallet_value_usd(source.get_wallet_balances(wallet.id))
        if total >= threshold:
            return None
        return raise_or_refresh(
            conn,
            LOW_BALANCE,
            None,
            SEVERITY_WARNING,
            f"Wallet {wallet.display_name} has a low balance of {_fmt_money(total)} USD "
            f"(threshold: {_fmt_money(threshold)})",
            {"walletId": wallet.id, "balance": total, "threshold": threshold},
            clock=clock,
        )

    results = for_each_isolated(list_active_wallets(conn), _check, key=lambda w: w.id, event="low_wallet_check_failed")
    return _collect("low_wallet_balance", results)

def check_low_account_balances(conn: sqlite3.Connection, source: BalanceSource | None = None,
                               converter: CurrencyConverter | None = None, threshold: float | None = None,
                               clock=None) -> SweepResult:
    """Accounts with no CURRENT/AVAILABLE snapshot count as zero balance."""
    source = source or StoreBalanceSource(conn)
    converter = converter or default_converter()
    threshold = settings.low_balance_threshold_usd if threshold is None else threshold

    def _check(account: AccountHolding):
        balance = account_value_usd(source.get_account_balance(account.id), converter)
        if balance >= threshold:
            return None
        return raise_or_refresh(
            conn,
            LOW_BALANCE,
            None,
            SEVERITY_WARNING,
            f"Account {account.display_name} has a low balance of {_fmt_money(balance)} USD "
            f"(threshold: {_fmt_money(threshold)})",
            {"accountId": account.id, "balance": balance, "threshold": threshold},
            clock=clock,
        )

    results = for_each_isolated(list_active_accounts(conn), _check, key=lambda a: a.id, event="low_account_check_failed")
    return _collect("low_account_balance", results)

def check_allocation_drift(conn: sqlite3.Connection, source: BalanceSource | None = None,
                           converter: CurrencyConverter | None = None, threshold: float | None = None,
                           clock=None) -> SweepResult:
    """One alert per client, describing its largest drift.

    Every over-threshold finding for the client is listed under `findings`.
    """
    threshold = settings.allocation_drift_threshold_pct if threshold is None else threshold
    by_client: dict[str, list[DriftFinding]] = {}
    for finding in detect_drift(conn, threshold, source=source, converter=converter, clock=clock):
        by_client.setdefault(finding.client_id, []).append(finding)

    def _raise(client_findings: list[DriftFinding]):
        f = max(client_findings, key=lambda x: x.drift_percentage)
        return raise_or_refresh(
            conn,
            ALLOCATION_DRIFT,
            f.client_id,
            alert_severity_for_drift(f.drift_percentage),
            f"Client {f.client_name or f.client_id}: Asset allocation has drifted by {f.drift_percentage:.2f}% "
            f"(Target: {f.target_percentage:.2f}%, Actual: {f.current_percentage:.2f}%)",
            {
                "clientId": f.client_id,
                "allocationId": f.allocation_id,
                "assetType": f.asset_type,
                "assetId": f.asset_id,
                "targetPercentage": f.target_percentage,
                "actualPercentage": f.current_percentage,
                "drift": f.drift_percentage,
                "findings": [
                    {"allocationId": x.allocation_id, "assetId": x.asset_id, "drift": x.drift_percentage}
                    for x in client_findings
                ],
            },
            clock=clock,
        )

    results = for_each_isolated(list(by_client.values()), _raise, key=lambda fs: fs[0].client_id,
                                event="drift_alert_failed")
    return _collect("allocation_drift", results)

def check_failed_syncs(conn: sqlite3.Connection, window_hours: float | None = None, clock=None) -> SweepResult:
    """Holdings not refreshed within the staleness window, or never refreshed."""
    window_hours = settings.failed_sync_alert_hours if window_hours is None else window_hours
    now = (clock or SystemClock()).now()

    def _stale(name: str, last, metadata: dict):
        hours = hours_between(last, now) if last else None
        if hours is not None and hours <= window_hours:
            return None
        return raise_or_refresh(
            conn,
            SYNC_FAILURE,
            None,
            SEVERITY_HIGH,
            f"{name} has not synced successfully in the last {window_hours:g} hours",
            {**metadata, "lastSyncAt": last.isoformat() if last else None, "hoursSinceSync": hours},
            clock=clock,
        )

    def _check_wallet(wallet: WalletHolding):
        return _stale(f"Wallet {wallet.display_name}", latest_wallet_update(conn, wallet.id), {"walletId": wallet.id})

    def _check_account(account: AccountHolding):
        return _stale(f"Account {account.display_name}", account.last_sync_at, {"accountId": account.id})

    results = for_each_isolated(list_active_wallets(conn), _check_wallet, key=lambda w: w.id,
                                event="wallet_sync_check_failed")
    results += for_each_isolated(list_active_accounts(conn), _check_account, key=lambda a: a.id,
                                 event="account_sync_check_failed")
    return _collect("failed_sync", results)

def evaluate_alerts(conn: sqlite3.Connection, source: BalanceSource | None = None,
                    converter: CurrencyConverter | None = None, clock=None) -> AlertSweepSummary:
    """Run the four sweeps in order. Existing alerts are never resolved here."""
    source = source or StoreBalanceSource(conn)
    converter = converter or default_converter()
    clock = clock or SystemClock()
    summary = AlertSweepSummary()
    summary.sweeps.append(check_low_wallet_balances(conn, source, clock=clock))
    summary.sweeps.append(check_low_account_balances(conn, source, converter, clock=clock))
    summary.sweeps.append(check_allocation_drift(conn, source, converter, clock=clock))
    summary.sweeps.append(check_failed_syncs(conn, clock=clock))
    log.info("alerts_evaluated", raised=summary.raised, created=len(summary.created))
    return summary
