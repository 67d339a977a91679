import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout


class TestCapacityMaintenance(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        os.environ["SEAT_ALLOCATION_DATA_DIR"] = cls._tmpdir.name
        os.environ.pop("SEAT_ALLOCATION_DB_URL", None)
        os.environ.pop("SEAT_ALLOCATION_PROJECT", None)
        from backend.app.db import init_db, reset_engine

        reset_engine()
        init_db()

    @classmethod
    def tearDownClass(cls):
        from backend.app.db import reset_engine

        reset_engine()
        cls._tmpdir.cleanup()

    def seed(self, unit_id, docs):
        from backend.app.db import get_session
        from backend.app.models import CapacityDocument

        with get_session() as s:
            for date_key, doc in docs.items():
                s.add(CapacityDocument(unit_id=unit_id, date_key=date_key, doc_json=json.dumps(doc), version=1))
            s.commit()

    def doc(self, unit_id, date_key):
        from backend.app.db import get_session
        from backend.app.models import CapacityDocument

        with get_session() as s:
            return s.get(CapacityDocument, (unit_id, date_key)).doc()

    def seed_month(self, unit_id):
        self.seed(
            unit_id,
            {
                "2025-01-01": {"totalCount": 2, "count": 2},
                "2025-01-02": {"totalCount": 3, "byTimeSlot": {"morning": 1, "evening": 1}, "lastMutationTraceId": "t9"},
                "2025-01-03": {"totalCount": 4, "count": 1},
                "2025-01-04": {"totalCount": 1, "count": 1, "byTimeSlot": {"lunch": 1}},
            },
        )

    def test_scan_reports_anomalies(self):
        from backend.app.maintenance import scan_capacity

        self.seed_month("scan-1")
        summary = scan_capacity("scan-1")
        self.assertEqual(summary.scanned, 4)
        self.assertEqual(summary.anomalies_found, 2)
        self.assertEqual(summary.anomaly_counts, {"byTimeSlot-sum-mismatch": 1, "count-mismatch": 1})
        self.assertIsNone(summary.next_cursor)

    def test_scan_pages_and_cursor(self):
        from backend.app.maintenance import scan_capacity

        self.seed_month("scan-2")
        first = scan_capacity("scan-2", limit=2, page_size=1)
        self.assertEqual(first.scanned, 2)
        self.assertEqual(first.next_cursor, "2025-01-02")

        second = scan_capacity("scan-2", limit=5, cursor=first.next_cursor)
        self.assertEqual(second.scanned, 2)
        self.assertIsNone(second.next_cursor)

        ranged = scan_capacity("scan-2", "2025-01-02", "2025-01-03")
        self.assertEqual(ranged.scanned, 2)
        self.assertEqual(ranged.anomalies_found, 2)

    def test_scan_every_unit(self):
        from backend.app.maintenance import scan_capacity

        self.seed("all-a", {"2031-05-01": {}})
        self.seed("all-b", {"2031-05-01": {"totalCount": 1, "count": 1}})
        summary = scan_capacity(None, "2031-05-01", "2031-05-01")
        self.assertEqual(summary.scanned, 2)
        self.assertEqual(summary.anomaly_counts, {"missing-counts": 1})

    def test_cleanup_dry_run_writes_nothing(self):
        from backend.app.maintenance import cleanup_capacity

        self.seed_month("clean-1")
        summary = cleanup_capacity("clean-1", dry_run=True)
        self.assertEqual((summary.scanned, summary.changed, summary.skipped), (4, 2, 2))
        self.assertEqual(summary.deleted_by_time_slot, 1)
        self.assertEqual(summary.committed_writes, 0)
        self.assertIn("byTimeSlot", self.doc("clean-1", "2025-01-02"))

    def test_cleanup_apply(self):
        from backend.app.maintenance import cleanup_capacity, scan_capacity

        self.seed_month("clean-2")
        summary = cleanup_capacity("clean-2", dry_run=False)
        self.assertEqual(summary.committed_writes, 2)
        self.assertEqual(
            self.doc("clean-2", "2025-01-02"), {"totalCount": 3, "count": 3, "lastMutationTraceId": "t9"}
        )
        self.assertEqual(self.doc("clean-2", "2025-01-03"), {"totalCount": 4, "count": 4})
        self.assertEqual(scan_capacity("clean-2").anomalies_found, 0)
        self.assertEqual(cleanup_capacity("clean-2", dry_run=False).changed, 0)


class TestMaintenanceCli(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        os.environ["SEAT_ALLOCATION_DATA_DIR"] = cls._tmpdir.name
        os.environ.pop("SEAT_ALLOCATION_DB_URL", None)
        os.environ.pop("SEAT_ALLOCATION_PROJECT", None)
        from backend.app.db import reset_engine

        reset_engine()

    @classmethod
    def tearDownClass(cls):
        from backend.app.db import reset_engine

        reset_engine()
        cls._tmpdir.cleanup()

    def run_cli(self, *argv):
        from backend.app.cli import main

        buf = io.StringIO()
        with redirect_stdout(buf):
            code = main(list(argv))
        return code, buf.getvalue()

    def test_scan_prints_summary(self):
        code, out = self.run_cli("scan", "--unit", "cli-1")
        self.assertEqual(code, 0)
        self.assertIn("[capacity-scan] summary", out)
        self.assertIn("nextCursor=null done=True", out)

    def test_validates_dates(self):
        code, out = self.run_cli("scan", "--from", "2025-1-1")
        self.assertEqual(code, 2)
        self.assertTrue(out.startswith("Error:"))
        code, _ = self.run_cli("scan", "--from", "2025-02-30")
        self.assertEqual(code, 2)
        code, _ = self.run_cli("scan", "--from", "2025-02-02", "--to", "2025-02-01")
        self.assertEqual(code, 2)

    def test_apply_guards(self):
        code, out = self.run_cli("cleanup", "--apply", "--yes")
        self.assertEqual(code, 2)
        self.assertIn("--project", out)
        code, _ = self.run_cli("cleanup", "--apply", "--yes", "--project", "demo-local")
        self.assertEqual(code, 2)
        code, out = self.run_cli("cleanup", "--apply", "--project", "prod")
        self.assertEqual(code, 2)
        self.assertIn("--yes", out)
        code, out = self.run_cli("cleanup", "--apply", "--yes", "--project", "prod", "--unit", "cli-2")
        self.assertEqual(code, 0)
        self.assertIn('"dry_run": false', out)

    def test_dry_run_is_default(self):
        code, out = self.run_cli("cleanup", "--unit", "cli-3")
        self.assertEqual(code, 0)
        self.assertIn('"dry_run": true', out)


if __name__ == "__main__":
    unittest.main()
