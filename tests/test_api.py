import os
import tempfile
import unittest

from fastapi.testclient import TestClient

from custody_engine.config import settings
from custody_engine.db import get_conn, migrate
from custody_engine.main import app

from seed_data import seed_client, seed_wallet


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self._saved = (settings.db_path, settings.scheduler_enabled)
        settings.db_path = os.path.join(self.tmp.name, "custody.db")
        settings.scheduler_enabled = 0
        self.conn = get_conn(settings.db_path)
        migrate(self.conn)
        seed_client(self.conn, "c1")
        seed_wallet(self.conn, "w1", usd=10_000.0, label="Treasury")
        self.client = TestClient(app)

    def tearDown(self):
        self.conn.close()
        settings.db_path, settings.scheduler_enabled = self._saved
        self.tmp.cleanup()

    def _create(self, **overrides):
        body = {
            "client_id": "c1",
            "asset_type": "Wallet",
            "asset_id": "w1",
            "allocation_type": "Percentage",
            "allocation_value": 25,
        }
        body.update(overrides)
        return self.client.post("/allocations", json=body)

    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["ok"])
        self.assertIsNone(r.json()["last_run"])

    def test_allocation_lifecycle_and_error_codes(self):
        r = self._create()
        self.assertEqual(r.status_code, 201)
        allocation_id = r.json()["id"]
        self.assertEqual(self._create().status_code, 409)

        bad = self._create(allocation_value=150)
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["detail"]["field"], "allocation_value")
        self.assertEqual(self._create(client_id="nobody").status_code, 404)

        listed = self.client.get("/allocations", params={"client_id": "c1"}).json()
        self.assertEqual([a["id"] for a in listed], [allocation_id])

        ended = self.client.post(f"/allocations/{allocation_id}/end")
        self.assertEqual(ended.status_code, 200)
        self.assertIsNotNone(ended.json()["end_date"])
        self.assertEqual(self.client.post(f"/allocations/{allocation_id}/end").status_code, 404)
        self.assertEqual(self.client.get("/allocations").json(), [])
        self.assertEqual(len(self.client.get("/allocations", params={"include_ended": True}).json()), 1)
        self.assertEqual(self.client.get("/allocations/conflicts").json(), {"conflicts": []})

    def test_portfolio_and_drift(self):
        self._create()
        r = self.client.get("/portfolio/clients/c1")
        self.assertEqual(r.status_code, 200)
        self.assertAlmostEqual(r.json()["total_value_usd"], 2500.0)
        self.assertEqual(r.json()["breakdown"][0]["asset_label"], "Treasury")
        self.assertEqual(self.client.get("/portfolio/clients/nobody").status_code, 404)

        consolidated = self.client.get("/portfolio/consolidated").json()
        self.assertEqual(consolidated["client_count"], 1)
        self.assertAlmostEqual(consolidated["total_wallet_value_usd"], 10_000.0)

        drift = self.client.get("/analytics/drift", params={"threshold": 10}).json()
        self.assertEqual(drift["total_allocations"], 1)
        self.assertEqual(drift["drifts_over_threshold"], 1)
        self.assertAlmostEqual(drift["drifts"][0]["drift_percentage"], 75.0)

    def test_jobs_and_alerts(self):
        self._create()
        r = self.client.post("/jobs/alert_generation")
        self.assertEqual(r.status_code, 202)
        run_id = r.json()["run_id"]
        run = self.client.get(f"/jobs/runs/{run_id}").json()
        self.assertEqual(run["status"], "succeeded")
        self.assertEqual(self.client.post("/jobs/nightly_report").status_code, 404)
        self.assertEqual(self.client.get("/jobs/runs/missing").status_code, 404)

        listed = self.client.get("/jobs/runs", params={"job_type": "alert_generation"}).json()
        self.assertEqual([x["run_id"] for x in listed], [run_id])
        self.assertEqual(self.client.get("/jobs/runs", params={"job_type": "wallet_sync"}).json(), [])
        self.assertEqual(self.client.get("/jobs/runs", params={"job_type": "nightly_report"}).status_code, 404)

        alerts = self.client.get("/alerts", params={"alert_type": "AllocationDrift"}).json()
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["client_id"], "c1")
        alert_id = alerts[0]["id"]

        acked = self.client.post(f"/alerts/{alert_id}/acknowledge", json={"by": "ops"})
        self.assertEqual(acked.status_code, 200)
        self.assertEqual(acked.json()["status"], "Acknowledged")
        self.assertEqual(self.client.post(f"/alerts/{alert_id}/acknowledge").status_code, 409)
        self.assertEqual(self.client.post(f"/alerts/{alert_id}/escalate").status_code, 404)
        self.assertEqual(self.client.post(f"/alerts/{alert_id}/resolve").json()["status"], "Resolved")
        self.assertEqual(self.client.post(f"/alerts/{alert_id}/dismiss").status_code, 404)

        summary = self.client.get("/alerts/summary").json()
        self.assertEqual(summary["by_type"]["AllocationDrift"], 1)
        self.assertEqual(summary["by_status"]["Resolved"], 1)


if __name__ == "__main__":
    unittest.main()
