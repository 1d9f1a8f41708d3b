import os
import tempfile
import threading
import time
import unittest

from devicegate.db import Database
from devicegate.entitlement import EntitlementCache, SOURCE_CACHE, SOURCE_ORACLE, SOURCE_UNBOUND
from devicegate.errors import DeviceGateError, ErrorKind
from devicegate.oracle import StaticOwnershipOracle
from devicegate.util import ManualClock

SUBJECT = "0x" + "11" * 20
CONTRACT = "0x" + "22" * 20
FRESHNESS = 86400


class GatedOracle(StaticOwnershipOracle):
    """Blocks every call until released, so callers pile up."""

    def __init__(self, fail=False):
        super().__init__()
        self.release = threading.Event()
        self.fail = fail

    def check(self, subject_address, evidence_key):
        self.release.wait(10)
        if self.fail:
            with self._lock:
                self.calls += 1
            raise DeviceGateError(ErrorKind.ORACLE_UNAVAILABLE, "gated failure")
        return super().check(subject_address, evidence_key)


class PausingDatabase(Database):
    """Holds one chosen thread right after its first cache read."""

    def __init__(self, path):
        super().__init__(path)
        self.pause_in = None
        self.missed = threading.Event()
        self.resume = threading.Event()

    def get_entitlement(self, subject_id, evidence_key):
        row = super().get_entitlement(subject_id, evidence_key)
        if threading.current_thread() is self.pause_in:
            self.pause_in = None
            self.missed.set()
            self.resume.wait(10)
        return row


class CacheTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Database(os.path.join(self._tmp.name, "cache.db"))
        self.clock = ManualClock()
        self.oracle = StaticOwnershipOracle()
        self.cache = self.make_cache(self.oracle)

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()

    def make_cache(self, oracle, **kwargs):
        kwargs.setdefault("freshness_seconds", FRESHNESS)
        return EntitlementCache(self.db, oracle, self.clock, **kwargs)


class TestTrustWindow(CacheTestCase):

    def test_miss_calls_oracle_and_stores(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 2)
        record = self.cache.check(SUBJECT, CONTRACT)
        self.assertTrue(record.holds)
        self.assertEqual(record.quantity, 2)
        self.assertEqual(record.source, SOURCE_ORACLE)
        self.assertEqual(self.oracle.calls, 1)
        self.assertIsNotNone(self.db.get_entitlement(SUBJECT, CONTRACT))

    def test_positive_served_inside_window(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(FRESHNESS - 1)
        record = self.cache.check(SUBJECT, CONTRACT)
        self.assertTrue(record.holds)
        self.assertEqual(record.source, SOURCE_CACHE)
        self.assertEqual(self.oracle.calls, 1)

    def test_positive_rechecked_after_window(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(FRESHNESS + 1)
        record = self.cache.check(SUBJECT, CONTRACT)
        self.assertEqual(record.source, SOURCE_ORACLE)
        self.assertEqual(self.oracle.calls, 2)

    def test_positive_at_exact_window_is_stale(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(FRESHNESS)
        self.cache.check(SUBJECT, CONTRACT)
        self.assertEqual(self.oracle.calls, 2)

    def test_recheck_overwrites_checked_at(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        first = self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(FRESHNESS + 5)
        second = self.cache.check(SUBJECT, CONTRACT)
        self.assertEqual(second.checked_at - first.checked_at, FRESHNESS + 5)
        self.assertEqual(self.db.get_stats()["entitlements_count"], 1)

    def test_force_refresh_skips_cache(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.cache.check(SUBJECT, CONTRACT, force_refresh=True)
        self.assertEqual(self.oracle.calls, 2)

    def test_lost_entitlement_is_noticed_after_window(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.oracle.set_balance(SUBJECT, CONTRACT, 0)
        self.assertTrue(self.cache.check(SUBJECT, CONTRACT).holds)
        self.clock.advance(FRESHNESS + 1)
        self.assertFalse(self.cache.check(SUBJECT, CONTRACT).holds)


class TestNegativeResults(CacheTestCase):

    def test_negative_always_rechecked(self):
        self.cache.check(SUBJECT, CONTRACT)
        self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(10 * FRESHNESS)
        self.cache.check(SUBJECT, CONTRACT)
        self.assertEqual(self.oracle.calls, 3)

    def test_newly_acquired_entitlement_visible_immediately(self):
        self.assertFalse(self.cache.check(SUBJECT, CONTRACT).holds)
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.assertTrue(self.cache.check(SUBJECT, CONTRACT).holds)

    def test_negative_backoff_when_configured(self):
        cache = self.make_cache(self.oracle, negative_recheck_seconds=60)
        cache.check(SUBJECT, CONTRACT)
        self.clock.advance(59)
        self.assertEqual(cache.check(SUBJECT, CONTRACT).source, SOURCE_CACHE)
        self.clock.advance(2)
        self.assertEqual(cache.check(SUBJECT, CONTRACT).source, SOURCE_ORACLE)
        self.assertEqual(self.oracle.calls, 2)

    def test_unbound_subject_skips_oracle(self):
        cache = self.make_cache(self.oracle, resolve_address=lambda subject_id: None)
        record = cache.check("device-without-wallet", CONTRACT)
        self.assertFalse(record.holds)
        self.assertEqual(record.source, SOURCE_UNBOUND)
        self.assertEqual(self.oracle.calls, 0)
        self.assertIsNone(self.db.get_entitlement("device-without-wallet", CONTRACT))

    def test_resolver_maps_subject_to_address(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 3)
        cache = self.make_cache(self.oracle, resolve_address=lambda subject_id: SUBJECT)
        record = cache.check("f" * 64, CONTRACT)
        self.assertTrue(record.holds)
        self.assertEqual(record.subject_id, "f" * 64)


class TestOracleUnavailable(CacheTestCase):

    def test_unavailable_is_raised_not_cached(self):
        self.oracle.available = False
        with self.assertRaises(DeviceGateError) as ctx:
            self.cache.check(SUBJECT, CONTRACT)
        self.assertEqual(ctx.exception.kind, ErrorKind.ORACLE_UNAVAILABLE)
        self.assertTrue(ctx.exception.retryable)
        self.assertIsNone(self.db.get_entitlement(SUBJECT, CONTRACT))

        self.oracle.available = True
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.assertTrue(self.cache.check(SUBJECT, CONTRACT).holds)

    def test_unavailable_keeps_previous_row(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        first = self.cache.check(SUBJECT, CONTRACT)
        self.clock.advance(FRESHNESS + 1)
        self.oracle.available = False
        with self.assertRaises(DeviceGateError):
            self.cache.check(SUBJECT, CONTRACT)
        row = self.db.get_entitlement(SUBJECT, CONTRACT)
        self.assertEqual(row["checked_at"], first.checked_at)


class TestSingleFlight(CacheTestCase):

    N = 8

    def _run_concurrently(self, cache, oracle):
        results, errors = [], []
        lock = threading.Lock()

        def worker():
            try:
                record = cache.check(SUBJECT, CONTRACT)
                with lock:
                    results.append(record)
            except DeviceGateError as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(self.N)]
        for t in threads:
            t.start()

        deadline = time.monotonic() + 10
        while cache.in_flight(SUBJECT, CONTRACT) < self.N - 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(cache.in_flight(SUBJECT, CONTRACT), self.N - 1)
        oracle.release.set()

        for t in threads:
            t.join(10)
        return results, errors

    def test_concurrent_miss_makes_one_oracle_call(self):
        oracle = GatedOracle()
        oracle.set_balance(SUBJECT, CONTRACT, 4)
        cache = self.make_cache(oracle)

        results, errors = self._run_concurrently(cache, oracle)

        self.assertEqual(errors, [])
        self.assertEqual(oracle.calls, 1)
        self.assertEqual(len(results), self.N)
        self.assertEqual(len(set(results)), 1)
        self.assertTrue(results[0].holds)
        self.assertEqual(cache.in_flight(SUBJECT, CONTRACT), 0)

    def test_failure_reaches_every_waiter(self):
        oracle = GatedOracle(fail=True)
        cache = self.make_cache(oracle)

        results, errors = self._run_concurrently(cache, oracle)

        self.assertEqual(results, [])
        self.assertEqual(len(errors), self.N)
        self.assertTrue(all(e.kind == ErrorKind.ORACLE_UNAVAILABLE for e in errors))
        self.assertEqual(oracle.calls, 1)
        self.assertIsNone(self.db.get_entitlement(SUBJECT, CONTRACT))

    def test_late_caller_uses_record_stored_by_finished_flight(self):
        db = PausingDatabase(os.path.join(self._tmp.name, "pausing.db"))
        self.addCleanup(db.close)
        oracle = StaticOwnershipOracle()
        oracle.set_balance(SUBJECT, CONTRACT, 1)
        cache = EntitlementCache(db, oracle, self.clock, freshness_seconds=FRESHNESS)

        results = []
        late = threading.Thread(target=lambda: results.append(cache.check(SUBJECT, CONTRACT)))
        db.pause_in = late
        late.start()
        self.assertTrue(db.missed.wait(10))

        first = cache.check(SUBJECT, CONTRACT)
        self.assertEqual(first.source, SOURCE_ORACLE)

        db.resume.set()
        late.join(10)
        self.assertEqual(oracle.calls, 1)
        self.assertEqual(results[0].source, SOURCE_CACHE)
        self.assertTrue(results[0].holds)

    def test_force_refresh_leader_ignores_fresh_record(self):
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        record = self.cache.check(SUBJECT, CONTRACT, force_refresh=True)
        self.assertEqual(record.source, SOURCE_ORACLE)
        self.assertEqual(self.oracle.calls, 2)

    def test_next_check_after_flight_calls_again(self):
        oracle = GatedOracle()
        oracle.release.set()
        cache = self.make_cache(oracle)
        cache.check(SUBJECT, CONTRACT)
        cache.check(SUBJECT, CONTRACT)
        self.assertEqual(oracle.calls, 2)


class TestForgetSubject(CacheTestCase):

    def test_forget_subject_removes_rows(self):
        other = "0x" + "33" * 20
        self.oracle.set_balance(SUBJECT, CONTRACT, 1)
        self.cache.check(SUBJECT, CONTRACT)
        self.cache.check(SUBJECT, other)
        self.assertEqual(self.cache.forget_subject(SUBJECT), 2)
        self.assertIsNone(self.cache.cached(SUBJECT, CONTRACT))


if __name__ == "__main__":
    unittest.main()
