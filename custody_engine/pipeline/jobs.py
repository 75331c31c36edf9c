from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

import structlog

from ..alerts.evaluator import evaluate_alerts
from ..alerts.notifier import LogNotifier, Notifier, notify_safely
from ..holdings import BalanceSource, CurrencyConverter, list_active_client_ids
from ..providers.common import (
    BlockchainDataProvider,
    OpenFinanceProvider,
    StaticBlockchainProvider,
    StaticOpenFinanceProvider,
)
from ..utils import SystemClock
from ..valuation.engine import value_client_portfolio, value_consolidated
from .batch import for_each_isolated, raise_if_all_failed_transient, summarize
from .retry import CALC_POLICY, SYNC_POLICY, RetryPolicy
from .sync import sync_accounts, sync_wallets

log = structlog.get_logger()

WALLET_SYNC = "wallet_sync"
ACCOUNT_SYNC = "account_sync"
PORTFOLIO_CALCULATION = "portfolio_calculation"
ALERT_GENERATION = "alert_generation"
JOB_TYPES = (WALLET_SYNC, ACCOUNT_SYNC, PORTFOLIO_CALCULATION, ALERT_GENERATION)


@dataclass
class JobContext:
    """Collaborators a job body runs against."""

    conn: sqlite3.Connection
    clock: object = field(default_factory=SystemClock)
    notifier: Notifier = field(default_factory=LogNotifier)
    source: BalanceSource | None = None
    converter: CurrencyConverter | None = None
    blockchain: BlockchainDataProvider = field(default_factory=StaticBlockchainProvider)
    open_finance: OpenFinanceProvider = field(default_factory=StaticOpenFinanceProvider)


def run_wallet_sync(ctx: JobContext) -> dict:
    return sync_wallets(ctx.conn, ctx.blockchain, clock=ctx.clock)

def run_account_sync(ctx: JobContext) -> dict:
    return sync_accounts(ctx.conn, ctx.open_finance, clock=ctx.clock)

def run_portfolio_calculation(ctx: JobContext) -> dict:
    """Value every active client, then the consolidated pass."""
    client_ids = list_active_client_ids(ctx.conn)
    log.info("portfolio_calculation_started", clients=len(client_ids))

    def _value(client_id: str):
        valuation = value_client_portfolio(ctx.conn, client_id, ctx.source, ctx.converter, clock=ctx.clock)
        notify_safely(
            ctx.notifier.notify_portfolio_recalculated,
            client_id,
            {
                "total_value_usd": valuation.total_value_usd,
                "crypto_value_usd": valuation.crypto_value_usd,
                "traditional_value_usd": valuation.traditional_value_usd,
                "calculation_date": valuation.calculation_date.isoformat(),
            },
        )
        return valuation.total_value_usd

    results = for_each_isolated(client_ids, _value, event="portfolio_calculation_failed")
    raise_if_all_failed_transient(results)
    consolidated = value_consolidated(ctx.conn, ctx.converter)
    summary = summarize(results)
    summary["consolidated"] = consolidated.to_dict()
    return summary

def run_alert_generation(ctx: JobContext) -> dict:
    sweep = evaluate_alerts(ctx.conn, ctx.source, ctx.converter, clock=ctx.clock)
    for alert in sweep.created:
        notify_safely(ctx.notifier.notify_alert_raised, alert)
    return sweep.to_dict()


@dataclass(frozen=True)
class JobSpec:
    job_type: str
    body: object
    policy: RetryPolicy


JOBS: dict[str, JobSpec] = {
    WALLET_SYNC: JobSpec(WALLET_SYNC, run_wallet_sync, SYNC_POLICY),
    ACCOUNT_SYNC: JobSpec(ACCOUNT_SYNC, run_account_sync, SYNC_POLICY),
    PORTFOLIO_CALCULATION: JobSpec(PORTFOLIO_CALCULATION, run_portfolio_calculation, CALC_POLICY),
    ALERT_GENERATION: JobSpec(ALERT_GENERATION, run_alert_generation, CALC_POLICY),
}
