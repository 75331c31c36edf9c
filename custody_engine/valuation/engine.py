from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date

import structlog

from ..config import settings
from ..db import transaction
from ..holdings import (
    ACCOUNT,
    WALLET,
    BalanceSource,
    CurrencyConverter,
    StaticRateConverter,
    StoreBalanceSource,
    holding_label,
    holding_value_usd,
    list_active_client_ids,
    total_account_value_usd,
    total_wallet_value_usd,
)
from ..ledger.allocations import PERCENTAGE, AllocationRecord, get_active_allocations
from ..utils import SystemClock, now_utc_iso, to_local_date

log = structlog.get_logger()


@dataclass
class AssetValuation:
    allocation_id: str
    asset_type: str
    asset_id: str
    asset_label: str
    allocation_type: str
    allocation_value: float
    holding_value_usd: float
    allocated_value_usd: float


@dataclass
class PortfolioValuation:
    client_id: str
    total_value_usd: float = 0.0
    crypto_value_usd: float = 0.0
    traditional_value_usd: float = 0.0
    breakdown: list[AssetValuation] = field(default_factory=list)
    calculation_date: date | None = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["calculation_date"] = self.calculation_date.isoformat() if self.calculation_date else None
        return out


@dataclass
class ConsolidatedValuation:
    client_count: int
    total_aum: float
    total_wallet_value_usd: float
    total_account_value_usd: float

    @property
    def total_holding_value(self) -> float:
        return self.total_wallet_value_usd + self.total_account_value_usd

    def to_dict(self) -> dict:
        out = asdict(self)
        out["total_holding_value"] = self.total_holding_value
        return out


def default_converter() -> StaticRateConverter:
    return StaticRateConverter(settings.fx_rates())

def value_allocation(record: AllocationRecord, holding_value: float, cap_fixed_amount: bool = False) -> float:
    """USD value of a holding attributed to one allocation.

    FixedAmount allocations are worth their configured amount regardless of
    the holding's current value unless `cap_fixed_amount` is set.
    """
    if record.allocation_type == PERCENTAGE:
        return holding_value * (record.allocation_value / 100.0)
    if cap_fixed_amount:
        return min(record.allocation_value, max(holding_value, 0.0))
    return record.allocation_value

def compute_client_portfolio(
    conn: sqlite3.Connection,
    client_id: str,
    source: BalanceSource | None = None,
    converter: CurrencyConverter | None = None,
    cap_fixed_amount: bool | None = None,
) -> PortfolioValuation:
    source = source or StoreBalanceSource(conn)
    converter = converter or default_converter()
    if cap_fixed_amount is None:
        cap_fixed_amount = settings.cap_fixed_amount_valuation
    valuation = PortfolioValuation(client_id=client_id)
    for record in get_active_allocations(conn, client_id):
        holding_value = holding_value_usd(source, record.asset_type, record.asset_id, converter)
        allocated = value_allocation(record, holding_value, cap_fixed_amount=cap_fixed_amount)
        valuation.total_value_usd += allocated
        if record.asset_type == WALLET:
            valuation.crypto_value_usd += allocated
        elif record.asset_type == ACCOUNT:
            valuation.traditional_value_usd += allocated
        valuation.breakdown.append(
            AssetValuation(
                allocation_id=record.id,
                asset_type=record.asset_type,
                asset_id=record.asset_id,
                asset_label=holding_label(conn, record.asset_type, record.asset_id),
                allocation_type=record.allocation_type,
                allocation_value=record.allocation_value,
                holding_value_usd=holding_value,
                allocated_value_usd=allocated,
            )
        )
    return valuation

def _previous_total(conn: sqlite3.Connection, client_id: str, calc_date: str) -> float | None:
    row = conn.execute(
        """
        SELECT total_value_usd FROM performance_metrics
        WHERE client_id=? AND calculation_date < ?
        ORDER BY calculation_date DESC LIMIT 1
        """,
        (client_id, calc_date),
    ).fetchone()
    return float(row[0]) if row else None

def upsert_performance_metric(conn: sqlite3.Connection, valuation: PortfolioValuation, calc_date: date, now_utc: str):
    calc = calc_date.isoformat()
    prev = _previous_total(conn, valuation.client_id, calc)
    profit_loss = valuation.total_value_usd - prev if prev is not None else 0.0
    breakdown = [asdict(item) for item in valuation.breakdown]
    conn.execute(
        """
        INSERT INTO performance_metrics
          (client_id, calculation_date, total_value_usd, crypto_value_usd, traditional_value_usd,
           roi, profit_loss, metrics_json, calculated_at_utc)
        VALUES (?,?,?,?,?,?,?,?,?)
        ON CONFLICT(client_id, calculation_date) DO UPDATE SET
          total_value_usd=excluded.total_value_usd,
          crypto_value_usd=excluded.crypto_value_usd,
          traditional_value_usd=excluded.traditional_value_usd,
          roi=excluded.roi,
          profit_loss=excluded.profit_loss,
          metrics_json=excluded.metrics_json,
          calculated_at_utc=excluded.calculated_at_utc
        """,
        (
            valuation.client_id,
            calc,
            valuation.total_value_usd,
            valuation.crypto_value_usd,
            valuation.traditional_value_usd,
            0.0,  # needs price history
            profit_loss,
            json.dumps({"breakdown": breakdown}),
            now_utc,
        ),
    )

def value_client_portfolio(
    conn: sqlite3.Connection,
    client_id: str,
    source: BalanceSource | None = None,
    converter: CurrencyConverter | None = None,
    clock=None,
    cap_fixed_amount: bool | None = None,
) -> PortfolioValuation:
    """Value a client's active allocations and record today's PerformanceMetric.

    Re-running on the same calendar date updates the existing metric row.
    """
    clock = clock or SystemClock()
    now = clock.now()
    valuation = compute_client_portfolio(conn, client_id, source, converter, cap_fixed_amount)
    valuation.calculation_date = to_local_date(now, settings.local_tz)
    with transaction(conn):
        upsert_performance_metric(conn, valuation, valuation.calculation_date, now_utc_iso(clock))
    log.info(
        "portfolio_calculated",
        client_id=client_id,
        total_value_usd=round(valuation.total_value_usd, 2),
        assets=len(valuation.breakdown),
        calculation_date=valuation.calculation_date.isoformat(),
    )
    return valuation

def get_performance_metric(conn: sqlite3.Connection, client_id: str, calculation_date: date | str):
    calc = calculation_date.isoformat() if isinstance(calculation_date, date) else str(calculation_date)
    row = conn.execute(
        """
        SELECT client_id, calculation_date, total_value_usd, crypto_value_usd, traditional_value_usd,
               roi, profit_loss, metrics_json, calculated_at_utc
        FROM performance_metrics WHERE client_id=? AND calculation_date=?
        """,
        (client_id, calc),
    ).fetchone()
    if not row:
        return None
    return {
        "client_id": row[0],
        "calculation_date": row[1],
        "total_value_usd": row[2],
        "crypto_value_usd": row[3],
        "traditional_value_usd": row[4],
        "roi": row[5],
        "profit_loss": row[6],
        "metrics": json.loads(row[7]) if row[7] else None,
        "calculated_at_utc": row[8],
    }

def value_consolidated(conn: sqlite3.Connection, converter: CurrencyConverter | None = None) -> ConsolidatedValuation:
    converter = converter or default_converter()
    client_ids = list_active_client_ids(conn)
    total_aum = 0.0
    for client_id in client_ids:
        row = conn.execute(
            """
            SELECT total_value_usd FROM performance_metrics
            WHERE client_id=? ORDER BY calculation_date DESC LIMIT 1
            """,
            (client_id,),
        ).fetchone()
        if row:
            total_aum += float(row[0])
    result = ConsolidatedValuation(
        client_count=len(client_ids),
        total_aum=total_aum,
        total_wallet_value_usd=total_wallet_value_usd(conn),
        total_account_value_usd=total_account_value_usd(conn, converter),
    )
    log.info(
        "consolidated_calculated",
        clients=result.client_count,
        total_aum=round(result.total_aum, 2),
        wallet_value_usd=round(result.total_wallet_value_usd, 2),
        account_value_usd=round(result.total_account_value_usd, 2),
    )
    return result
