import unittest

from seat_allocation.planner import clean_slot_key, compute_mutation_plan, counts_toward_capacity


def _plan(**kw):
    return [m.to_dict() for m in compute_mutation_plan(**kw)]


class TestMutationPlan(unittest.TestCase):
    def test_statuses(self):
        self.assertTrue(counts_toward_capacity("confirmed"))
        self.assertTrue(counts_toward_capacity("pending"))
        self.assertFalse(counts_toward_capacity("cancelled"))
        self.assertFalse(counts_toward_capacity(None))
        self.assertFalse(counts_toward_capacity(""))

    def test_clean_slot_key(self):
        self.assertEqual(clean_slot_key("  evening "), "evening")
        self.assertIsNone(clean_slot_key("   "))
        self.assertIsNone(clean_slot_key(None))

    def test_create(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-01", old_count=0, new_count=4,
            old_included=False, new_included=True, new_slot_key="evening",
        )
        self.assertEqual(plan, [{"key": "2025-01-01", "totalDelta": 4, "slotDeltas": {"evening": 4}}])

    def test_cancel(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-01", old_count=4, new_count=4,
            old_included=True, new_included=False,
        )
        self.assertEqual(plan, [{"key": "2025-01-01", "totalDelta": -4}])

    def test_neither_included(self):
        self.assertEqual(
            _plan(old_key="a", new_key="b", old_count=3, new_count=5, old_included=False, new_included=False), []
        )

    def test_headcount_change_same_slot(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-01", old_count=2, new_count=5,
            old_included=True, new_included=True, old_slot_key="lunch", new_slot_key="lunch",
        )
        self.assertEqual(plan, [{"key": "2025-01-01", "totalDelta": 3, "slotDeltas": {"lunch": 3}}])

    def test_no_change_is_empty(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-01", old_count=2, new_count=2,
            old_included=True, new_included=True, old_slot_key="lunch", new_slot_key="lunch",
        )
        self.assertEqual(plan, [])

    def test_slot_change_only(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-01", old_count=2, new_count=2,
            old_included=True, new_included=True, old_slot_key="afternoon", new_slot_key="evening",
        )
        self.assertEqual(
            plan, [{"key": "2025-01-01", "totalDelta": 0, "slotDeltas": {"afternoon": -2, "evening": 2}}]
        )

    def test_cross_day_move(self):
        plan = _plan(
            old_key="2025-01-01", new_key="2025-01-02", old_count=3, new_count=5,
            old_included=True, new_included=True,
        )
        self.assertEqual(
            plan, [{"key": "2025-01-01", "totalDelta": -3}, {"key": "2025-01-02", "totalDelta": 5}]
        )

    def test_conservation(self):
        for old_key, new_key in (("d1", "d1"), ("d1", "d2")):
            for old_inc in (True, False):
                for new_inc in (True, False):
                    for old_count, new_count in ((2, 2), (2, 7), (6, 1)):
                        plan = compute_mutation_plan(
                            old_key, new_key, old_count, new_count, old_inc, new_inc, "s1", "s2"
                        )
                        expected = (new_count if new_inc else 0) - (old_count if old_inc else 0)
                        self.assertEqual(sum(m.total_delta for m in plan), expected)
                        if old_key != new_key:
                            by_key = {m.key: m.total_delta for m in plan}
                            self.assertEqual(by_key.get("d1", 0), -old_count if old_inc else 0)
                            self.assertEqual(by_key.get("d2", 0), new_count if new_inc else 0)


if __name__ == "__main__":
    unittest.main()
