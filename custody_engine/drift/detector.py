from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime

import structlog

from ..alerts.constants import (
    ALLOCATION_DRIFT_THRESHOLD_PCT,
    DRIFT_ALERT_HIGH_PCT,
    DRIFT_SEVERITY_LOW_MAX,
    DRIFT_SEVERITY_MEDIUM_MAX,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
)
from ..holdings import BalanceSource, CurrencyConverter, StoreBalanceSource, holding_label, holding_value_usd
from ..ledger.allocations import PERCENTAGE, AllocationRecord, get_active_allocations
from ..pipeline.batch import for_each_isolated
from ..utils import SystemClock
from ..valuation.engine import compute_client_portfolio, default_converter

log = structlog.get_logger()


@dataclass
class DriftFinding:
    allocation_id: str
    client_id: str
    client_name: str | None
    asset_type: str
    asset_id: str
    asset_identifier: str
    allocation_type: str
    target_value: float
    current_value: float
    target_percentage: float
    current_percentage: float
    drift_percentage: float
    drift_amount_usd: float
    severity: str
    recommended_action: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DriftReport:
    drifts: list[DriftFinding] = field(default_factory=list)
    total_allocations: int = 0
    drifts_over_threshold: int = 0
    average_drift_percentage: float = 0.0
    calculated_at: datetime | None = None
    failed_allocations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "drifts": [d.to_dict() for d in self.drifts],
            "total_allocations": self.total_allocations,
            "drifts_over_threshold": self.drifts_over_threshold,
            "average_drift_percentage": self.average_drift_percentage,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
            "failed_allocations": list(self.failed_allocations),
        }


def classify_drift_severity(drift_percentage: float) -> str:
    if drift_percentage < DRIFT_SEVERITY_LOW_MAX:
        return "Low"
    if drift_percentage < DRIFT_SEVERITY_MEDIUM_MAX:
        return "Medium"
    return "High"

def alert_severity_for_drift(drift_percentage: float) -> str:
    return SEVERITY_HIGH if drift_percentage > DRIFT_ALERT_HIGH_PCT else SEVERITY_MEDIUM

def recommended_action(current_pct: float, target_pct: float, drift_amount_usd: float) -> str:
    if current_pct > target_pct:
        return f"Consider reducing allocation by {drift_amount_usd:.2f} USD"
    return f"Consider increasing allocation by {drift_amount_usd:.2f} USD"

def measure_drift(record: AllocationRecord, holding_value: float, client_total: float) -> tuple[float, float, float, float]:
    """(target_value, current_value, target_pct, current_pct) for one allocation.

    Percentage allocations take current value equal to target value, so their
    drift only moves when the client's overall portfolio composition changes.
    FixedAmount allocations cap the current value at the holding's value.
    """
    if record.allocation_type == PERCENTAGE:
        target_pct = record.allocation_value
        target_value = holding_value * (record.allocation_value / 100.0)
        current_value = target_value
        current_pct = (current_value / client_total) * 100.0 if client_total > 0 else 0.0
    else:
        target_value = record.allocation_value
        current_value = min(record.allocation_value, holding_value)
        target_pct = (target_value / holding_value) * 100.0 if holding_value > 0 else 0.0
        current_pct = (current_value / holding_value) * 100.0 if holding_value > 0 else 0.0
    return target_value, current_value, target_pct, current_pct

def _client_names(conn: sqlite3.Connection) -> dict[str, str]:
    return {r[0]: r[1] for r in conn.execute("SELECT id, name FROM clients").fetchall()}

def analyze_drift(
    conn: sqlite3.Connection,
    threshold: float = ALLOCATION_DRIFT_THRESHOLD_PCT,
    source: BalanceSource | None = None,
    converter: CurrencyConverter | None = None,
    clock=None,
    client_id: str | None = None,
) -> DriftReport:
    """Drift for every active allocation, largest first."""
    source = source or StoreBalanceSource(conn)
    converter = converter or default_converter()
    clock = clock or SystemClock()
    allocations = get_active_allocations(conn, client_id)
    report = DriftReport(total_allocations=len(allocations), calculated_at=clock.now())
    if not allocations:
        return report

    names = _client_names(conn)
    client_totals: dict[str, float] = {}
    holding_values: dict[tuple[str, str], float] = {}

    def _measure(record: AllocationRecord) -> DriftFinding | None:
        key = (record.asset_type, record.asset_id)
        if key not in holding_values:
            holding_values[key] = holding_value_usd(source, record.asset_type, record.asset_id, converter)
        holding_value = holding_values[key]
        if holding_value == 0:
            log.warning("drift_zero_value_holding_skipped", allocation_id=record.id, asset_id=record.asset_id)
            return None

        client_total = 0.0
        if record.allocation_type == PERCENTAGE:
            if record.client_id not in client_totals:
                client_totals[record.client_id] = compute_client_portfolio(
                    conn, record.client_id, source, converter
                ).total_value_usd
            client_total = client_totals[record.client_id]

        target_value, current_value, target_pct, current_pct = measure_drift(record, holding_value, client_total)
        drift_pct = abs(current_pct - target_pct)
        drift_usd = abs(current_value - target_value)
        return DriftFinding(
            allocation_id=record.id,
            client_id=record.client_id,
            client_name=names.get(record.client_id),
            asset_type=record.asset_type,
            asset_id=record.asset_id,
            asset_identifier=holding_label(conn, record.asset_type, record.asset_id),
            allocation_type=record.allocation_type,
            target_value=target_value,
            current_value=current_value,
            target_percentage=target_pct,
            current_percentage=current_pct,
            drift_percentage=drift_pct,
            drift_amount_usd=drift_usd,
            severity=classify_drift_severity(drift_pct),
            recommended_action=recommended_action(current_pct, target_pct, drift_usd) if drift_pct > threshold else None,
        )

    results = for_each_isolated(allocations, _measure, key=lambda r: r.id, event="drift_measure_failed")
    report.failed_allocations = [str(r.key) for r in results if not r.ok]
    report.drifts = [r.value for r in results if r.ok and r.value is not None]
    report.drifts.sort(key=lambda d: d.drift_percentage, reverse=True)
    report.drifts_over_threshold = sum(1 for d in report.drifts if d.drift_percentage > threshold)
    if report.drifts:
        report.average_drift_percentage = sum(d.drift_percentage for d in report.drifts) / len(report.drifts)
    log.info(
        "drift_analyzed",
        allocations=report.total_allocations,
        measured=len(report.drifts),
        over_threshold=report.drifts_over_threshold,
        threshold=threshold,
    )
    return report

def detect_drift(
    conn: sqlite3.Connection,
    threshold: float = ALLOCATION_DRIFT_THRESHOLD_PCT,
    source: BalanceSource | None = None,
    converter: CurrencyConverter | None = None,
    clock=None,
) -> list[DriftFinding]:
    """Findings whose drift exceeds `threshold` percentage points."""
    report = analyze_drift(conn, threshold, source=source, converter=converter, clock=clock)
    return [d for d in report.drifts if d.drift_percentage > threshold]
