import unittest

from custody_engine.drift.detector import (
    alert_severity_for_drift,
    analyze_drift,
    classify_drift_severity,
    detect_drift,
)
from custody_engine.holdings import StaticRateConverter
from custody_engine.ledger.allocations import FIXED_AMOUNT, PERCENTAGE, create_allocation

from seed_data import make_clock, make_conn, seed_account, seed_client, seed_wallet


class DriftDetectorTests(unittest.TestCase):
    def setUp(self):
        self.conn = make_conn()
        self.clock = make_clock()
        self.converter = StaticRateConverter({"BRL": 0.20})
        seed_client(self.conn, "c1")

    def tearDown(self):
        self.conn.close()

    def _allocate(self, asset_type, asset_id, allocation_type, value, client_id="c1"):
        return create_allocation(
            self.conn,
            client_id=client_id,
            asset_type=asset_type,
            asset_id=asset_id,
            allocation_type=allocation_type,
            allocation_value=value,
            clock=self.clock,
        )

    def _detect(self, threshold=10.0):
        return detect_drift(self.conn, threshold, converter=self.converter, clock=self.clock)

    def test_allocation_matching_its_share_is_not_flagged(self):
        seed_wallet(self.conn, "w1", usd=10_000.0)
        seed_wallet(self.conn, "w2", usd=10_000.0)
        self._allocate("Wallet", "w1", PERCENTAGE, 50)
        self._allocate("Wallet", "w2", PERCENTAGE, 50)
        self.assertEqual(self._detect(), [])
        report = analyze_drift(self.conn, 10.0, converter=self.converter, clock=self.clock)
        self.assertEqual(report.total_allocations, 2)
        self.assertEqual(len(report.drifts), 2)
        self.assertEqual(report.drifts_over_threshold, 0)
        self.assertAlmostEqual(report.average_drift_percentage, 0.0)

    def test_percentage_share_far_from_target_is_flagged(self):
        seed_wallet(self.conn, "w1", usd=10_000.0)
        record = self._allocate("Wallet", "w1", PERCENTAGE, 25)
        findings = self._detect()
        self.assertEqual(len(findings), 1)
        finding = findings[0]
        self.assertEqual(finding.allocation_id, record.id)
        self.assertEqual(finding.client_name, "Acme Capital")
        self.assertAlmostEqual(finding.target_percentage, 25.0)
        self.assertAlmostEqual(finding.current_percentage, 100.0)
        self.assertAlmostEqual(finding.drift_percentage, 75.0)
        self.assertEqual(finding.severity, "High")
        self.assertTrue(finding.recommended_action.startswith("Consider reducing allocation"))

    def test_fixed_amount_current_value_is_capped_by_holding(self):
        seed_wallet(self.conn, "w1", usd=500.0)
        self._allocate("Wallet", "w1", FIXED_AMOUNT, 1000)
        finding = self._detect()[0]
        self.assertAlmostEqual(finding.target_value, 1000.0)
        self.assertAlmostEqual(finding.current_value, 500.0)
        self.assertAlmostEqual(finding.target_percentage, 200.0)
        self.assertAlmostEqual(finding.current_percentage, 100.0)
        self.assertAlmostEqual(finding.drift_amount_usd, 500.0)
        self.assertEqual(finding.recommended_action, "Consider increasing allocation by 500.00 USD")

    def test_fixed_amount_within_holding_has_no_drift(self):
        seed_wallet(self.conn, "w1", usd=5000.0)
        self._allocate("Wallet", "w1", FIXED_AMOUNT, 1000)
        report = analyze_drift(self.conn, 10.0, converter=self.converter, clock=self.clock)
        self.assertEqual(len(report.drifts), 1)
        self.assertAlmostEqual(report.drifts[0].drift_percentage, 0.0)
        self.assertIsNone(report.drifts[0].recommended_action)

    def test_zero_value_holding_is_skipped(self):
        seed_wallet(self.conn, "w1", usd=None)
        self._allocate("Wallet", "w1", PERCENTAGE, 25)
        report = analyze_drift(self.conn, 10.0, converter=self.converter, clock=self.clock)
        self.assertEqual(report.total_allocations, 1)
        self.assertEqual(report.drifts, [])
        self.assertEqual(report.failed_allocations, [])

    def test_failing_allocation_does_not_stop_the_rest(self):
        seed_client(self.conn, "c2", name="Beta Fund")
        seed_wallet(self.conn, "w1", usd=10_000.0)
        seed_account(self.conn, "a1", amount=100.0, currency="EUR")
        self._allocate("Wallet", "w1", PERCENTAGE, 25)
        bad = self._allocate("Account", "a1", PERCENTAGE, 10, client_id="c2")
        report = analyze_drift(self.conn, 10.0, converter=self.converter, clock=self.clock)
        self.assertEqual(report.failed_allocations, [bad.id])
        self.assertEqual([d.client_id for d in report.drifts], ["c1"])

    def test_findings_are_sorted_by_drift(self):
        seed_client(self.conn, "c2", name="Beta Fund")
        seed_wallet(self.conn, "w1", usd=500.0)
        seed_wallet(self.conn, "w2", usd=10_000.0)
        self._allocate("Wallet", "w1", FIXED_AMOUNT, 1000)
        self._allocate("Wallet", "w2", PERCENTAGE, 25, client_id="c2")
        drifts = [d.drift_percentage for d in self._detect()]
        self.assertEqual(drifts, sorted(drifts, reverse=True))
        self.assertAlmostEqual(drifts[0], 100.0)

    def test_severity_bands(self):
        self.assertEqual(classify_drift_severity(4.99), "Low")
        self.assertEqual(classify_drift_severity(5.0), "Medium")
        self.assertEqual(classify_drift_severity(9.99), "Medium")
        self.assertEqual(classify_drift_severity(10.0), "High")
        self.assertEqual(alert_severity_for_drift(20.0), "Medium")
        self.assertEqual(alert_severity_for_drift(20.01), "High")


if __name__ == "__main__":
    unittest.main()
