import unittest
from datetime import date, datetime, timezone

from seat_allocation.capacity import CapacityInvariantReason
from seat_allocation.ledger import (
    CapacityLedgerService,
    LedgerState,
    WarnOnceCache,
    is_ledger_replay,
    resolve_ledger_current_key,
    should_skip_capacity_mutation,
    to_date_key,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeTransaction:
    """In-memory LedgerTransaction."""

    def __init__(self, bookings=None, capacity=None):
        self.bookings = bookings or {}
        self.capacity = capacity or {}
        self.writes = []

    def get_booking(self, unit_id, booking_id):
        return dict(self.bookings.get((unit_id, booking_id), {}))

    def get_capacity(self, unit_id, date_key):
        doc = self.capacity.get((unit_id, date_key))
        return dict(doc) if doc is not None else None

    def set_capacity(self, unit_id, date_key, doc):
        self.writes.append(date_key)
        self.capacity[(unit_id, date_key)] = dict(doc)

    def update_ledger(self, unit_id, booking_id, ledger):
        self.bookings.setdefault((unit_id, booking_id), {})["capacityLedger"] = ledger


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _service():
    return CapacityLedgerService(warn_cache=WarnOnceCache(), now=lambda: NOW)


class TestLedgerHelpers(unittest.TestCase):
    def test_date_key(self):
        self.assertEqual(to_date_key(date(2025, 3, 9)), "2025-03-09")

    def test_resolve_current_key(self):
        self.assertEqual(resolve_ledger_current_key("2025-01-01", None, "2025-02-02"), "2025-01-01")
        self.assertEqual(resolve_ledger_current_key(None, datetime(2025, 1, 3, 18), "2025-02-02"), "2025-01-03")
        self.assertEqual(resolve_ledger_current_key(None, None, "2025-02-02"), "2025-02-02")

    def test_replay_needs_trace_and_same_state(self):
        ledger = LedgerState(applied=True, key="d", count=2, last_mutation_trace_id="t1")
        desired = LedgerState(applied=True, key="d", count=2, last_mutation_trace_id="t1")
        self.assertTrue(is_ledger_replay(ledger, desired, "t1"))
        self.assertFalse(is_ledger_replay(ledger, desired, "t2"))
        self.assertFalse(is_ledger_replay(ledger, desired, None))
        self.assertFalse(is_ledger_replay(ledger, LedgerState(applied=True, key="d", count=3), "t1"))

    def test_skip_capacity_mutation(self):
        self.assertTrue(should_skip_capacity_mutation("t1", "t1"))
        self.assertFalse(should_skip_capacity_mutation("t1", "t0"))
        self.assertFalse(should_skip_capacity_mutation(None, None))

    def test_ledger_state_round_trip(self):
        state = LedgerState(applied=True, key="d", count=2, slot_key="lunch", applied_at=NOW, last_mutation_trace_id="t")
        self.assertEqual(LedgerState.from_dict(state.to_dict()), state)
        self.assertEqual(LedgerState.from_dict(None), LedgerState())


class TestWarnOnceCache(unittest.TestCase):
    def test_ttl_and_bound(self):
        clock = FakeClock()
        cache = WarnOnceCache(maxsize=2, ttl_seconds=10, clock=clock)
        self.assertTrue(cache.first_time("a"))
        self.assertFalse(cache.first_time("a"))
        clock.now = 11
        self.assertTrue(cache.first_time("a"))
        cache.first_time("b")
        cache.first_time("c")
        self.assertEqual(len(cache), 2)
        self.assertTrue(cache.first_time("a"))
        cache.clear()
        self.assertEqual(len(cache), 0)

    def test_should_warn_invariant(self):
        service = _service()
        reasons = [CapacityInvariantReason.by_time_slot_sum_mismatch]
        self.assertFalse(service.should_warn_invariant([], True, "u", "d"))
        self.assertFalse(service.should_warn_invariant(reasons, False, "u", "d"))
        self.assertTrue(service.should_warn_invariant(reasons, True, "u", "d", "t"))
        self.assertFalse(service.should_warn_invariant(reasons, True, "u", "d", "t"))
        severe = [CapacityInvariantReason.total_count_invalid]
        self.assertTrue(service.should_warn_invariant(severe, False, "u", "d2"))


class TestCapacityLedgerService(unittest.TestCase):
    def _booking(self, **kw):
        b = {"status": "pending", "headcount": 2, "startTime": datetime(2025, 1, 1, 19), "timeSlot": "evening"}
        b.update(kw)
        return b

    def test_first_apply_then_replay(self):
        tx = FakeTransaction(bookings={("u", "b1"): self._booking()})
        service = _service()
        out = service.apply(tx, "u", "b1", "confirmed", "2025-01-01", 2, "evening", "trace-1")
        self.assertFalse(out.replayed)
        self.assertEqual([m.to_dict() for m in out.applied], [{"key": "2025-01-01", "totalDelta": 2, "slotDeltas": {"evening": 2}}])
        doc = tx.capacity[("u", "2025-01-01")]
        self.assertEqual(doc["totalCount"], 2)
        self.assertEqual(doc["byTimeSlot"], {"evening": 2})
        self.assertEqual(doc["lastMutationTraceId"], "trace-1")

        ledger = tx.bookings[("u", "b1")]["capacityLedger"]
        self.assertTrue(ledger["applied"])
        self.assertEqual((ledger["key"], ledger["count"], ledger["slotKey"]), ("2025-01-01", 2, "evening"))
        self.assertEqual(ledger["appliedAt"], NOW.isoformat())

        with self.assertLogs("seat_allocation.ledger", level="INFO"):
            again = service.apply(tx, "u", "b1", "confirmed", "2025-01-01", 2, "evening", "trace-1")
        self.assertTrue(again.replayed)
        self.assertEqual(tx.capacity[("u", "2025-01-01")]["totalCount"], 2)
        self.assertEqual(tx.writes, ["2025-01-01"])

    def test_partial_retry_skips_written_documents(self):
        # the new day already carries this trace id, the old day does not
        booking = self._booking(
            capacityLedger={"applied": True, "key": "2025-01-01", "count": 2, "lastMutationTraceId": "t0"}
        )
        tx = FakeTransaction(
            bookings={("u", "b1"): booking},
            capacity={
                ("u", "2025-01-01"): {"totalCount": 5, "count": 5},
                ("u", "2025-01-02"): {"totalCount": 2, "count": 2, "lastMutationTraceId": "move"},
            },
        )
        out = _service().apply(tx, "u", "b1", "confirmed", "2025-01-02", 2, None, "move")
        self.assertEqual(out.skipped_keys, ["2025-01-02"])
        self.assertEqual(tx.capacity[("u", "2025-01-01")]["totalCount"], 3)
        self.assertEqual(tx.capacity[("u", "2025-01-02")]["totalCount"], 2)
        self.assertEqual(tx.bookings[("u", "b1")]["capacityLedger"]["key"], "2025-01-02")

    def test_cancel_releases_headcount(self):
        booking = self._booking(
            capacityLedger={"applied": True, "key": "2025-01-01", "count": 2, "slotKey": "evening"}
        )
        tx = FakeTransaction(
            bookings={("u", "b1"): booking},
            capacity={("u", "2025-01-01"): {"totalCount": 6, "count": 6, "byTimeSlot": {"evening": 6}}},
        )
        out = _service().apply(tx, "u", "b1", "cancelled", "2025-01-01", 2, None, "cancel-1")
        self.assertEqual([m.total_delta for m in out.applied], [-2])
        self.assertEqual(
            tx.capacity[("u", "2025-01-01")],
            {"totalCount": 4, "count": 4, "byTimeSlot": {"evening": 4}, "lastMutationTraceId": "cancel-1"},
        )
        ledger = tx.bookings[("u", "b1")]["capacityLedger"]
        self.assertFalse(ledger["applied"])
        self.assertIsNone(ledger["key"])
        self.assertIsNone(ledger["appliedAt"])

    def test_diff_against_ledger_not_booking_fields(self):
        # headcount field says 10 but only 3 were ever applied
        booking = self._booking(headcount=10, capacityLedger={"applied": True, "key": "2025-01-01", "count": 3})
        tx = FakeTransaction(
            bookings={("u", "b1"): booking}, capacity={("u", "2025-01-01"): {"totalCount": 3, "count": 3}}
        )
        _service().apply(tx, "u", "b1", "confirmed", "2025-01-01", 4, None, "t")
        self.assertEqual(tx.capacity[("u", "2025-01-01")]["totalCount"], 4)

    def test_repairs_corrupt_document_and_warns_once(self):
        booking = self._booking()
        corrupt = {"totalCount": 3, "count": 3, "byTimeSlot": {"lunch": 1}}
        tx = FakeTransaction(bookings={("u", "b1"): booking}, capacity={("u", "2025-01-01"): corrupt})
        service = _service()
        with self.assertLogs("seat_allocation.ledger", level="WARNING") as logs:
            service.apply(tx, "u", "b1", "confirmed", "2025-01-01", 2, "evening", "t")
        self.assertIn("byTimeSlot-sum-mismatch", logs.output[0])
        # previous breakdown was dropped, so the new slot cannot be tracked either
        self.assertEqual(tx.capacity[("u", "2025-01-01")], {"totalCount": 5, "count": 5, "lastMutationTraceId": "t"})

    def test_replay_state_twice_equals_once(self):
        def run(times):
            tx = FakeTransaction(bookings={("u", "b1"): self._booking()})
            service = _service()
            for _ in range(times):
                service.apply(tx, "u", "b1", "confirmed", "2025-01-01", 3, "lunch", "t1")
            return tx.capacity

        self.assertEqual(run(1), run(2))


if __name__ == "__main__":
    unittest.main()
