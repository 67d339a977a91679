import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from seat_allocation.__main__ import main
from seat_allocation.models import AllocationError
from seat_allocation.storage import Floorplan, load_floorplan, maybe_init_floorplan, save_floorplan


def _run(*argv):
    buf = io.StringIO()
    with redirect_stdout(buf):
        code = main(list(argv))
    return code, buf.getvalue()


class TestStorage(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_init_then_load(self):
        path = self.dir / "fp.json"
        fp = maybe_init_floorplan(path)
        self.assertTrue(path.exists())
        loaded = load_floorplan(path)
        self.assertEqual(loaded.to_dict(), fp.to_dict())
        self.assertTrue(loaded.settings.allocation_enabled)
        self.assertEqual([t.id for t in loaded.tables], ["T1", "T2"])

    def test_init_keeps_existing(self):
        path = self.dir / "fp.json"
        save_floorplan(Floorplan(), path)
        fp = maybe_init_floorplan(path)
        self.assertEqual(fp.tables, [])

    def test_invalid_file(self):
        path = self.dir / "fp.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with self.assertRaises(AllocationError):
            load_floorplan(path)
        with self.assertRaises(AllocationError):
            load_floorplan(self.dir / "missing.json")

    def test_camel_case_documents(self):
        fp = Floorplan.from_dict(
            {
                "settings": {"allocationEnabled": True, "allocationMode": "floorplan", "bufferMinutes": None},
                "zones": [{"id": "A", "isActive": True}],
                "tables": [{"id": "T1", "zoneId": "A", "capacityMax": 6}],
                "combinations": [{"id": "c1"}],
            }
        )
        self.assertEqual(fp.settings.allocation_mode.value, "floorplan")
        self.assertEqual(fp.tables[0].max_seats, 6)
        self.assertEqual(fp.combinations, [])


class TestCli(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.file = str(self.dir / "fp.json")

    def tearDown(self):
        self._tmp.cleanup()

    def test_init_and_suggest(self):
        code, out = _run("init", "--file", self.file)
        self.assertEqual(code, 0)
        self.assertIn("1 zones, 2 tables", out)

        code, out = _run("suggest", "--file", self.file, "--party-size", "3", "--date", "2025-01-07", "--json")
        self.assertEqual(code, 0)
        decision = json.loads(out)
        self.assertEqual(decision["tableIds"], ["T1", "T2"])
        self.assertEqual(decision["reason"], "BEST_FIT")

        code, out = _run("suggest", "--file", self.file, "--party-size", "9", "--date", "2025-01-07")
        self.assertEqual(code, 1)
        self.assertIn("NO_FIT", out)

    def test_missing_file_is_error(self):
        code, out = _run("suggest", "--file", str(self.dir / "nope.json"), "--party-size", "2", "--date", "2025-01-07")
        self.assertEqual(code, 2)
        self.assertTrue(out.startswith("Error:"))

    def test_plan(self):
        code, out = _run(
            "plan", "--old-key", "2025-01-01", "--old-count", "2",
            "--old-status", "confirmed", "--new-status", "confirmed",
            "--old-slot", "afternoon", "--new-slot", "evening",
        )
        self.assertEqual(code, 0)
        self.assertIn("afternoon:-2", out)
        self.assertIn("evening:+2", out)

    def test_check(self):
        path = self.dir / "capacity.json"
        path.write_text(
            json.dumps(
                {
                    "2025-01-01": {"totalCount": 3, "count": 3},
                    "2025-01-02": {"totalCount": 3, "byTimeSlot": {"morning": 1, "evening": 1}},
                }
            ),
            encoding="utf-8",
        )
        code, out = _run("check", "--capacity", str(path))
        self.assertEqual(code, 1)
        self.assertIn("byTimeSlot-sum-mismatch", out)
        self.assertIn("2025-01-02: would write", out)
        self.assertNotIn("2025-01-01: would write", out)


if __name__ == "__main__":
    unittest.main()
