import unittest
from datetime import timedelta

from custody_engine.alerts.constants import (
    ALLOCATION_DRIFT,
    LOW_BALANCE,
    STATUS_ACKNOWLEDGED,
    STATUS_ACTIVE,
    STATUS_DISMISSED,
    STATUS_RESOLVED,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    SYNC_FAILURE,
)
from custody_engine.alerts.evaluator import (
    check_allocation_drift,
    check_failed_syncs,
    check_low_account_balances,
    check_low_wallet_balances,
    evaluate_alerts,
)
from custody_engine.alerts.storage import (
    AlertKey,
    acknowledge_alert,
    alert_summary,
    dismiss_alert,
    get_open_alert,
    list_alerts,
    raise_or_refresh,
    resolve_alert,
    upsert_alert,
)
from custody_engine.errors import ConflictError, NotFoundError
from custody_engine.holdings import StaticRateConverter, WalletBalanceSnapshot, upsert_wallet_balance
from custody_engine.ledger.allocations import PERCENTAGE, create_allocation

from seed_data import hours_ago, make_clock, make_conn, seed_account, seed_client, seed_wallet


class AlertStorageTests(unittest.TestCase):
    def setUp(self):
        self.conn = make_conn()
        self.clock = make_clock()

    def tearDown(self):
        self.conn.close()

    def _raise(self, message="low", client_id=None, severity="Warning"):
        return raise_or_refresh(self.conn, LOW_BALANCE, client_id, severity, message, {"balance": 1}, clock=self.clock)

    def test_refresh_updates_the_live_alert(self):
        first = self._raise("first")
        self.assertTrue(first.created)
        self.clock.advance(timedelta(minutes=30))
        second = self._raise("second", severity="High")
        self.assertFalse(second.created)
        self.assertEqual(second.alert["id"], first.alert["id"])
        self.assertEqual(second.alert["message"], "second")
        self.assertEqual(second.alert["severity"], "High")
        self.assertGreater(second.alert["created_at_utc"], first.alert["created_at_utc"])
        self.assertEqual(len(list_alerts(self.conn)), 1)

    def test_identity_includes_client(self):
        self._raise(client_id=None)
        self._raise(client_id="c1")
        self._raise(client_id="c2")
        self._raise(client_id="c1")
        self.assertEqual(len(list_alerts(self.conn)), 3)
        self.assertIsNotNone(get_open_alert(self.conn, AlertKey(LOW_BALANCE, None)))

    def test_resolved_alert_allows_a_new_one(self):
        first = self._raise()
        resolve_alert(self.conn, first.alert["id"], "ops", clock=self.clock)
        again = self._raise()
        self.assertTrue(again.created)
        self.assertNotEqual(again.alert["id"], first.alert["id"])
        self.assertEqual(len(list_alerts(self.conn)), 2)
        self.assertEqual(len(list_alerts(self.conn, status=STATUS_ACTIVE)), 1)

    def test_acknowledged_alert_is_still_refreshed(self):
        first = self._raise("first")
        acknowledge_alert(self.conn, first.alert["id"], "ops", clock=self.clock)
        second = self._raise("second")
        self.assertFalse(second.created)
        self.assertEqual(second.alert["status"], STATUS_ACKNOWLEDGED)
        self.assertEqual(second.alert["message"], "second")

    def test_upsert_mutator_sees_existing_alert(self):
        seen = []

        def mutator(existing):
            seen.append(existing)
            count = (existing["metadata"]["count"] + 1) if existing else 1
            return {"severity": "Warning", "message": f"seen {count}", "metadata": {"count": count}}

        key = AlertKey(SYNC_FAILURE, None)
        upsert_alert(self.conn, key, mutator, clock=self.clock)
        result = upsert_alert(self.conn, key, mutator, clock=self.clock)
        self.assertIsNone(seen[0])
        self.assertEqual(result.alert["metadata"], {"count": 2})

    def test_status_transitions(self):
        alert_id = self._raise().alert["id"]
        acked = acknowledge_alert(self.conn, alert_id, "ops", clock=self.clock)
        self.assertEqual(acked["status"], STATUS_ACKNOWLEDGED)
        self.assertEqual(acked["acknowledged_by"], "ops")
        with self.assertRaises(ConflictError):
            acknowledge_alert(self.conn, alert_id, "ops", clock=self.clock)
        dismissed = dismiss_alert(self.conn, alert_id, "ops", clock=self.clock)
        self.assertEqual(dismissed["status"], STATUS_DISMISSED)
        resolved = resolve_alert(self.conn, alert_id, "ops", clock=self.clock)
        self.assertEqual(resolved["status"], STATUS_RESOLVED)
        self.assertEqual(resolved["resolved_by"], "ops")
        with self.assertRaises(NotFoundError):
            acknowledge_alert(self.conn, alert_id, clock=self.clock)
        with self.assertRaises(NotFoundError):
            resolve_alert(self.conn, alert_id, clock=self.clock)
        with self.assertRaises(NotFoundError):
            dismiss_alert(self.conn, "missing", clock=self.clock)

    def test_summary_counts(self):
        a = self._raise(client_id="c1").alert["id"]
        self._raise(client_id="c2", severity="High")
        raise_or_refresh(self.conn, SYNC_FAILURE, None, "High", "stale", clock=self.clock)
        acknowledge_alert(self.conn, a, clock=self.clock)
        summary = alert_summary(self.conn)
        self.assertEqual(summary["total"], 3)
        self.assertEqual(summary["by_status"][STATUS_ACTIVE], 2)
        self.assertEqual(summary["by_status"][STATUS_ACKNOWLEDGED], 1)
        self.assertEqual(summary["by_status"][STATUS_RESOLVED], 0)
        self.assertEqual(summary["by_severity"], {"Warning": 1, "High": 2})
        self.assertEqual(summary["by_type"], {LOW_BALANCE: 2, SYNC_FAILURE: 1})


class AlertSweepTests(unittest.TestCase):
    def setUp(self):
        self.conn = make_conn()
        self.clock = make_clock()
        self.converter = StaticRateConverter({"BRL": 0.20})

    def tearDown(self):
        self.conn.close()

    def _set_wallet_usd(self, wallet_id, usd):
        upsert_wallet_balance(
            self.conn, wallet_id,
            WalletBalanceSnapshot(chain="ethereum", token_symbol="ETH", balance=1.0, balance_usd=usd),
            self.clock.now().isoformat(),
        )

    def test_low_wallet_balance_is_refreshed_not_duplicated(self):
        seed_wallet(self.conn, "w1", usd=900.0, label="Treasury")
        first = check_low_wallet_balances(self.conn, threshold=1000.0, clock=self.clock)
        self.assertEqual(len(first.created), 1)
        alert = first.created[0]
        self.assertEqual(alert["severity"], "Warning")
        self.assertIsNone(alert["client_id"])
        self.assertEqual(alert["message"], "Wallet Treasury has a low balance of $900.00 USD (threshold: $1,000.00)")

        self.clock.advance(timedelta(minutes=30))
        self._set_wallet_usd("w1", 950.0)
        second = check_low_wallet_balances(self.conn, threshold=1000.0, clock=self.clock)
        self.assertEqual(second.created, [])
        self.assertEqual(second.raised, 1)
        alerts = list_alerts(self.conn, alert_type=LOW_BALANCE)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["id"], alert["id"])
        self.assertEqual(alerts[0]["metadata"]["balance"], 950.0)
        self.assertIn("$950.00", alerts[0]["message"])
        self.assertGreater(alerts[0]["created_at_utc"], alert["created_at_utc"])

    def test_cleared_condition_does_not_resolve(self):
        seed_wallet(self.conn, "w1", usd=900.0)
        check_low_wallet_balances(self.conn, threshold=1000.0, clock=self.clock)
        self._set_wallet_usd("w1", 5000.0)
        result = check_low_wallet_balances(self.conn, threshold=1000.0, clock=self.clock)
        self.assertEqual(result.raised, 0)
        alerts = list_alerts(self.conn)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["status"], STATUS_ACTIVE)

    def test_low_account_balance_uses_converted_value(self):
        seed_account(self.conn, "a1", amount=4000.0, currency="BRL", label="Ops BRL")
        seed_account(self.conn, "a2", amount=6000.0, currency="USD")
        result = check_low_account_balances(self.conn, converter=self.converter, threshold=1000.0, clock=self.clock)
        self.assertEqual(result.raised, 1)
        alert = result.created[0]
        self.assertEqual(alert["metadata"]["accountId"], "a1")
        self.assertEqual(alert["message"], "Account Ops BRL has a low balance of $800.00 USD (threshold: $1,000.00)")

    def test_unconvertible_account_fails_alone(self):
        seed_account(self.conn, "a1", amount=10.0, currency="EUR")
        seed_account(self.conn, "a2", amount=10.0, currency="USD")
        result = check_low_account_balances(self.conn, converter=self.converter, threshold=1000.0, clock=self.clock)
        self.assertEqual(result.failed_keys, ["a1"])
        self.assertEqual(result.raised, 1)

    def test_stale_wallet_raises_sync_failure(self):
        seed_wallet(self.conn, "w1", usd=5000.0, updated_at=hours_ago(25))
        result = check_failed_syncs(self.conn, window_hours=24, clock=self.clock)
        self.assertEqual(len(result.created), 1)
        alert = result.created[0]
        self.assertEqual(alert["alert_type"], SYNC_FAILURE)
        self.assertEqual(alert["severity"], "High")
        self.assertAlmostEqual(alert["metadata"]["hoursSinceSync"], 25.0)
        self.assertEqual(alert["message"], "Wallet 0xw1 has not synced successfully in the last 24 hours")

    def test_recent_wallet_does_not_raise(self):
        seed_wallet(self.conn, "w1", usd=5000.0, updated_at=hours_ago(23))
        result = check_failed_syncs(self.conn, window_hours=24, clock=self.clock)
        self.assertEqual(result.raised, 0)
        self.assertEqual(list_alerts(self.conn), [])

    def test_never_synced_holdings_raise(self):
        seed_wallet(self.conn, "w1", usd=None)
        result = check_failed_syncs(self.conn, window_hours=24, clock=self.clock)
        self.assertEqual(result.raised, 1)
        self.assertIsNone(result.created[0]["metadata"]["hoursSinceSync"])

    def test_stale_account_raises(self):
        seed_account(self.conn, "a1", amount=5000.0, last_sync_at=hours_ago(30), label="Payroll")
        seed_account(self.conn, "a2", amount=5000.0, last_sync_at=hours_ago(2))
        result = check_failed_syncs(self.conn, window_hours=24, clock=self.clock)
        self.assertEqual(result.raised, 1)
        self.assertEqual(result.created[0]["metadata"]["accountId"], "a1")
        self.assertTrue(result.created[0]["message"].startswith("Account Payroll"))

    def test_drift_alert_is_scoped_to_client(self):
        seed_client(self.conn, "c1")
        seed_wallet(self.conn, "w1", usd=10_000.0)
        create_allocation(
            self.conn, client_id="c1", asset_type="Wallet", asset_id="w1",
            allocation_type=PERCENTAGE, allocation_value=25, clock=self.clock,
        )
        result = check_allocation_drift(self.conn, converter=self.converter, threshold=10.0, clock=self.clock)
        self.assertEqual(len(result.created), 1)
        alert = result.created[0]
        self.assertEqual(alert["alert_type"], ALLOCATION_DRIFT)
        self.assertEqual(alert["client_id"], "c1")
        self.assertEqual(alert["severity"], "High")
        self.assertEqual(
            alert["message"],
            "Client Acme Capital: Asset allocation has drifted by 75.00% (Target: 25.00%, Actual: 100.00%)",
        )
        self.assertEqual(alert["metadata"]["assetId"], "w1")

    def test_drift_alert_keeps_largest_drift_per_client(self):
        seed_client(self.conn, "c1")
        seed_wallet(self.conn, "w1", usd=9_000.0)
        seed_wallet(self.conn, "w2", usd=1_000.0)
        seed_wallet(self.conn, "w3", usd=100_000.0)
        for wallet_id, pct in (("w1", 50), ("w2", 50), ("w3", 1)):
            create_allocation(
                self.conn, client_id="c1", asset_type="Wallet", asset_id=wallet_id,
                allocation_type=PERCENTAGE, allocation_value=pct, clock=self.clock,
            )
        result = check_allocation_drift(self.conn, converter=self.converter, threshold=10.0, clock=self.clock)
        self.assertEqual(result.raised, 1)
        alert = get_open_alert(self.conn, AlertKey(ALLOCATION_DRIFT, "c1"))
        self.assertEqual(alert["severity"], SEVERITY_HIGH)
        self.assertEqual(alert["metadata"]["assetId"], "w2")
        self.assertAlmostEqual(alert["metadata"]["drift"], 125.0 / 3)
        self.assertIn("drifted by 41.67%", alert["message"])
        self.assertEqual(
            sorted(x["assetId"] for x in alert["metadata"]["findings"]), ["w1", "w2", "w3"]
        )
        self.assertEqual(len(list_alerts(self.conn, alert_type=ALLOCATION_DRIFT)), 1)

    def test_drift_alert_severity_bands(self):
        seed_client(self.conn, "c1")
        seed_wallet(self.conn, "w1", usd=8_500.0)
        seed_wallet(self.conn, "w2", usd=1_500.0)
        for wallet_id in ("w1", "w2"):
            create_allocation(
                self.conn, client_id="c1", asset_type="Wallet", asset_id=wallet_id,
                allocation_type=PERCENTAGE, allocation_value=50, clock=self.clock,
            )
        check_allocation_drift(self.conn, converter=self.converter, threshold=10.0, clock=self.clock)
        alert = get_open_alert(self.conn, AlertKey(ALLOCATION_DRIFT, "c1"))
        self.assertEqual(alert["severity"], SEVERITY_HIGH)

        self._set_wallet_usd("w1", 6_500.0)
        self._set_wallet_usd("w2", 3_500.0)
        check_allocation_drift(self.conn, converter=self.converter, threshold=10.0, clock=self.clock)
        alert = get_open_alert(self.conn, AlertKey(ALLOCATION_DRIFT, "c1"))
        self.assertEqual(alert["severity"], SEVERITY_MEDIUM)

    def test_evaluate_runs_all_sweeps_in_order(self):
        seed_client(self.conn, "c1")
        seed_wallet(self.conn, "w1", usd=500.0)
        seed_account(self.conn, "a1", amount=50_000.0)
        summary = evaluate_alerts(self.conn, converter=self.converter, clock=self.clock)
        self.assertEqual(
            [s.name for s in summary.sweeps],
            ["low_wallet_balance", "low_account_balance", "allocation_drift", "failed_sync"],
        )
        self.assertEqual([a["alert_type"] for a in summary.created], [LOW_BALANCE])
        again = evaluate_alerts(self.conn, converter=self.converter, clock=self.clock)
        self.assertEqual(again.created, [])
        self.assertEqual(again.raised, 1)


if __name__ == "__main__":
    unittest.main()
