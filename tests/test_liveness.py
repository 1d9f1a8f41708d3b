import threading
import unittest

from devicegate.errors import DeviceGateError, ErrorKind
from devicegate.heartbeat import HeartbeatService
from devicegate.liveness import (
    LivenessMonitor,
    LivenessPhase,
    LivenessRegistry,
    SequenceViolation,
    TerminationReason,
)
from devicegate.util import ManualClock

TIMEOUT = 40


class TestLivenessMonitor(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.monitor = LivenessMonitor("session-1", "subject-1", self.clock, TIMEOUT)
        self.terminations = []
        self.monitor.add_listener(lambda m, reason: self.terminations.append(reason))

    def test_starts_unarmed(self):
        state = self.monitor.snapshot()
        self.assertEqual(state.phase, LivenessPhase.UNARMED)
        self.assertEqual(state.expected_sequence, 1)
        self.assertFalse(state.armed)
        self.assertIsNone(state.last_heartbeat_at)

    def test_happy_path_stays_armed(self):
        for sequence in range(1, 11):
            self.clock.advance(30)
            ack = self.monitor.receive(sequence)
            self.assertTrue(ack.accepted)
            self.assertEqual(ack.next_sequence, sequence + 1)
        state = self.monitor.snapshot()
        self.assertEqual(state.phase, LivenessPhase.ARMED)
        self.assertEqual(state.expected_sequence, 11)
        self.assertEqual(self.terminations, [])

    def test_duplicate_sequence_terminates(self):
        self.monitor.receive(1)
        self.monitor.receive(2)
        with self.assertRaises(DeviceGateError) as ctx:
            self.monitor.receive(2)
        self.assertEqual(ctx.exception.kind, ErrorKind.SEQUENCE_VIOLATION)
        self.assertEqual(self.monitor.phase, LivenessPhase.TERMINATED)
        self.assertEqual(self.terminations, [TerminationReason.SEQUENCE_VIOLATION])

    def test_skipped_sequence_terminates(self):
        self.monitor.receive(1)
        with self.assertRaises(DeviceGateError):
            self.monitor.receive(3)
        self.assertEqual(self.monitor.phase, LivenessPhase.TERMINATED)

    def test_violation_carries_expected_and_received(self):
        self.monitor.receive(1)
        with self.assertRaises(SequenceViolation) as ctx:
            self.monitor.receive(7)
        self.assertEqual((ctx.exception.expected, ctx.exception.received), (2, 7))

    def test_first_heartbeat_must_be_one(self):
        with self.assertRaises(DeviceGateError) as ctx:
            self.monitor.receive(2)
        self.assertEqual(ctx.exception.kind, ErrorKind.SEQUENCE_VIOLATION)
        self.assertEqual(self.monitor.phase, LivenessPhase.TERMINATED)

    def test_terminated_is_irreversible(self):
        with self.assertRaises(DeviceGateError):
            self.monitor.receive(5)
        with self.assertRaises(DeviceGateError) as ctx:
            self.monitor.receive(1)
        self.assertEqual(ctx.exception.kind, ErrorKind.SESSION_TERMINATED)
        self.assertEqual(len(self.terminations), 1)

    def test_gap_beyond_timeout_terminates(self):
        self.monitor.receive(1)
        self.clock.advance(TIMEOUT + 1)
        self.assertEqual(self.monitor.check(), LivenessPhase.TERMINATED)
        self.assertEqual(self.terminations, [TerminationReason.TIMEOUT])
        self.assertTrue(self.monitor.terminated_event.is_set())

    def test_gap_within_timeout_survives(self):
        self.monitor.receive(1)
        self.clock.advance(TIMEOUT - 1)
        self.assertEqual(self.monitor.check(), LivenessPhase.ARMED)
        self.monitor.receive(2)
        self.clock.advance(TIMEOUT - 1)
        self.assertEqual(self.monitor.check(), LivenessPhase.ARMED)

    def test_accepted_heartbeat_resets_full_countdown(self):
        self.clock.advance(35)
        self.monitor.receive(1)
        self.assertAlmostEqual(self.monitor.time_remaining(), TIMEOUT)

    def test_late_heartbeat_is_refused(self):
        self.monitor.receive(1)
        self.clock.advance(TIMEOUT + 1)
        with self.assertRaises(DeviceGateError) as ctx:
            self.monitor.receive(2)
        self.assertEqual(ctx.exception.kind, ErrorKind.SESSION_TERMINATED)

    def test_unarmed_timeout_terminates(self):
        self.clock.advance(TIMEOUT + 1)
        self.assertEqual(self.monitor.check(), LivenessPhase.TERMINATED)
        with self.assertRaises(DeviceGateError) as ctx:
            self.monitor.ensure_active()
        self.assertEqual(ctx.exception.kind, ErrorKind.SESSION_TERMINATED)

    def test_listener_added_after_termination_fires(self):
        self.monitor.terminate(TerminationReason.SHUTDOWN)
        late = []
        self.monitor.add_listener(lambda m, reason: late.append(reason))
        self.assertEqual(late, [TerminationReason.SHUTDOWN])
        self.assertFalse(self.monitor.terminate(TerminationReason.SHUTDOWN))

    def test_failing_listener_does_not_block_others(self):
        monitor = LivenessMonitor("s", "u", self.clock, TIMEOUT)
        seen = []

        def broken(m, reason):
            raise RuntimeError("boom")

        monitor.add_listener(broken)
        monitor.add_listener(lambda m, reason: seen.append(reason))
        monitor.terminate(TerminationReason.TIMEOUT)
        self.assertEqual(seen, [TerminationReason.TIMEOUT])

    def test_concurrent_same_sequence_accepts_exactly_one(self):
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def send():
            barrier.wait()
            try:
                self.monitor.receive(1)
                result = "accepted"
            except DeviceGateError as e:
                result = e.kind
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=send) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(map(str, outcomes)), sorted(["accepted", str(ErrorKind.SEQUENCE_VIOLATION)]))
        self.assertEqual(self.monitor.phase, LivenessPhase.TERMINATED)


class TestLivenessRegistry(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.registry = LivenessRegistry(self.clock, TIMEOUT)
        self.terminated = []
        self.registry.add_termination_listener(
            lambda m, reason: self.terminated.append((m.session_id, reason)))

    def test_unknown_session_is_terminated(self):
        with self.assertRaises(DeviceGateError) as ctx:
            self.registry.require("missing")
        self.assertEqual(ctx.exception.kind, ErrorKind.SESSION_TERMINATED)

    def test_new_session_supersedes_previous(self):
        first = self.registry.open("s1", "subject")
        second = self.registry.open("s2", "subject")
        self.assertEqual(first.phase, LivenessPhase.TERMINATED)
        self.assertEqual(second.phase, LivenessPhase.UNARMED)
        self.assertIn(("s1", TerminationReason.SUPERSEDED), self.terminated)

    def test_sessions_of_different_subjects_are_independent(self):
        a = self.registry.open("s1", "alice")
        b = self.registry.open("s2", "bob")
        a.receive(1)
        self.assertEqual(b.phase, LivenessPhase.UNARMED)
        self.assertEqual(self.registry.active_count(), 2)

    def test_sweep_evicts_timed_out_sessions(self):
        live = self.registry.open("s1", "alice")
        self.registry.open("s2", "bob")
        self.clock.advance(30)
        live.receive(1)
        self.clock.advance(15)
        swept = self.registry.sweep()
        self.assertEqual([m.session_id for m in swept], ["s2"])
        self.assertIsNone(self.registry.get("s2"))
        self.assertIs(self.registry.require("s1"), live)
        self.assertEqual(self.terminated, [("s2", TerminationReason.TIMEOUT)])

    def test_sweeper_thread_starts_and_stops(self):
        self.registry.open("s1", "alice")
        self.clock.advance(TIMEOUT + 1)
        self.registry.start_sweeper(interval_seconds=0.01)
        try:
            for _ in range(500):
                if self.registry.get("s1") is None:
                    break
                threading.Event().wait(0.01)
        finally:
            self.registry.stop_sweeper()
        self.assertIsNone(self.registry.get("s1"))


class TestHeartbeatService(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock()
        self.service = HeartbeatService(self.clock, timeout_seconds=TIMEOUT, interval_seconds=30)
        self.service.open_session("s1", "alice")

    def test_violation_is_logged_with_rejected_values(self):
        self.service.receive("s1", "alice", 1)
        with self.assertLogs("devicegate.audit", level="ERROR") as logs:
            with self.assertRaises(SequenceViolation):
                self.service.receive("s1", "alice", 5)
        self.assertIn("expected 2, received 5", logs.output[0])

    def test_interval_must_be_below_timeout(self):
        with self.assertRaises(ValueError):
            HeartbeatService(self.clock, timeout_seconds=30, interval_seconds=30)


if __name__ == "__main__":
    unittest.main()
