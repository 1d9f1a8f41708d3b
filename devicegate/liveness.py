"""
Heartbeat liveness monitor.

States: UNARMED -> ARMED -> TERMINATED (terminal).

- The first heartbeat must carry sequence 1; it arms the monitor.
- Every later heartbeat must carry exactly ``expected_sequence``; an
  accepted heartbeat increments it and restarts the full countdown.
- Any other sequence terminates immediately (replay/tamper is assumed).
- If the countdown elapses, armed or not, the monitor terminates.

Termination is irreversible. Listeners registered on the monitor are
called exactly once so the owner can discard credentials, cached
entitlements and any buffered automation state.

All state changes for one session happen under that monitor's lock.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .errors import DeviceGateError, ErrorKind

logger = logging.getLogger(__name__)


class LivenessPhase(str, Enum):
    UNARMED = "UNARMED"
    ARMED = "ARMED"
    TERMINATED = "TERMINATED"


class TerminationReason(str, Enum):
    TIMEOUT = "timeout"
    SEQUENCE_VIOLATION = "sequence_violation"
    SUPERSEDED = "superseded"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class LivenessState:
    expected_sequence: int
    last_heartbeat_at: Optional[float]
    armed: bool
    phase: LivenessPhase


@dataclass(frozen=True)
class HeartbeatAck:
    accepted: bool
    sequence: int
    next_sequence: int
    deadline_in: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "accepted": self.accepted,
            "sequence": self.sequence,
            "next_sequence": self.next_sequence,
            "deadline_in": round(self.deadline_in, 3),
        }


class SequenceViolation(DeviceGateError):
    """A heartbeat carried the wrong sequence number."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(ErrorKind.SEQUENCE_VIOLATION, f"expected heartbeat {expected}, received {received}")


TerminationListener = Callable[["LivenessMonitor", TerminationReason], None]


class LivenessMonitor:
    """Liveness state machine for one session instance."""

    def __init__(self, session_id: str, subject_id: str, clock, timeout_seconds: float = 40):
        self.session_id = session_id
        self.subject_id = subject_id
        self._clock = clock
        self._timeout = float(timeout_seconds)
        self._lock = threading.Lock()
        self._phase = LivenessPhase.UNARMED
        self._expected = 1
        self._started_at = clock.monotonic()
        self._last_heartbeat_at: Optional[float] = None
        self._reason: Optional[TerminationReason] = None
        self._listeners: List[TerminationListener] = []
        self.terminated_event = threading.Event()

    # ---- queries -------------------------------------------------------

    @property
    def phase(self) -> LivenessPhase:
        self.check()
        return self._phase

    @property
    def termination_reason(self) -> Optional[TerminationReason]:
        return self._reason

    def snapshot(self) -> LivenessState:
        self.check()
        with self._lock:
            return LivenessState(
                expected_sequence=self._expected,
                last_heartbeat_at=self._last_heartbeat_at,
                armed=self._phase == LivenessPhase.ARMED,
                phase=self._phase,
            )

    def time_remaining(self) -> float:
        with self._lock:
            return self._remaining_locked()

    def _remaining_locked(self) -> float:
        if self._phase == LivenessPhase.TERMINATED:
            return 0.0
        reference = self._last_heartbeat_at if self._last_heartbeat_at is not None else self._started_at
        return reference + self._timeout - self._clock.monotonic()

    # ---- transitions ---------------------------------------------------

    def add_listener(self, listener: TerminationListener) -> None:
        fire_now = False
        with self._lock:
            if self._phase == LivenessPhase.TERMINATED:
                fire_now = True
            else:
                self._listeners.append(listener)
        if fire_now:
            self._notify([listener], self._reason)

    def check(self) -> LivenessPhase:
        """Apply the countdown; terminate if it has elapsed."""
        listeners = None
        with self._lock:
            if self._phase != LivenessPhase.TERMINATED and self._remaining_locked() <= 0:
                listeners = self._terminate_locked(TerminationReason.TIMEOUT)
            phase = self._phase
        if listeners is not None:
            self._notify(listeners, TerminationReason.TIMEOUT)
        return phase

    def receive(self, sequence: int) -> HeartbeatAck:
        """
        Evaluate one heartbeat.

        Raises:
            DeviceGateError: SessionTerminated if already terminated or the
                countdown elapsed; SequenceViolation if the sequence is not
                exactly the expected one (the session is terminated first).
        """
        self.check()
        listeners = None
        with self._lock:
            if self._phase == LivenessPhase.TERMINATED:
                raise DeviceGateError(ErrorKind.SESSION_TERMINATED, "session has been terminated")

            expected = self._expected
            if sequence != expected:
                listeners = self._terminate_locked(TerminationReason.SEQUENCE_VIOLATION)
            else:
                self._phase = LivenessPhase.ARMED
                self._expected = expected + 1
                self._last_heartbeat_at = self._clock.monotonic()
                ack = HeartbeatAck(
                    accepted=True,
                    sequence=sequence,
                    next_sequence=self._expected,
                    deadline_in=self._timeout,
                )

        if listeners is not None:
            self._notify(listeners, TerminationReason.SEQUENCE_VIOLATION)
            raise SequenceViolation(expected, sequence)
        return ack

    def terminate(self, reason: TerminationReason) -> bool:
        """Terminate now. Returns False if already terminated."""
        with self._lock:
            if self._phase == LivenessPhase.TERMINATED:
                return False
            listeners = self._terminate_locked(reason)
        self._notify(listeners, reason)
        return True

    def ensure_active(self) -> None:
        if self.check() == LivenessPhase.TERMINATED:
            raise DeviceGateError(ErrorKind.SESSION_TERMINATED, "session has been terminated")

    def _terminate_locked(self, reason: TerminationReason) -> List[TerminationListener]:
        self._phase = LivenessPhase.TERMINATED
        self._reason = reason
        self.terminated_event.set()
        listeners, self._listeners = self._listeners, []
        return listeners

    def _notify(self, listeners: List[TerminationListener], reason: TerminationReason) -> None:
        for listener in listeners:
            try:
                listener(self, reason)
            except Exception:
                logger.exception("Termination listener failed for session %s", self.session_id[:8])


class LivenessRegistry:
    """
    Server-side collection of monitors, one per session instance.

    Sessions are keyed by the credential's issuance nonce. Opening a new
    session for a subject supersedes (terminates) its previous one.
    """

    def __init__(self, clock, timeout_seconds: float = 40):
        self._clock = clock
        self._timeout = timeout_seconds
        self._lock = threading.RLock()
        self._sessions: Dict[str, LivenessMonitor] = {}
        self._by_subject: Dict[str, str] = {}
        self._listeners: List[TerminationListener] = []
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def add_termination_listener(self, listener: TerminationListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def open(self, session_id: str, subject_id: str) -> LivenessMonitor:
        monitor = LivenessMonitor(session_id, subject_id, self._clock, self._timeout)
        with self._lock:
            for listener in self._listeners:
                monitor.add_listener(listener)
            previous_id = self._by_subject.get(subject_id)
            previous = self._sessions.get(previous_id) if previous_id else None
            self._sessions[session_id] = monitor
            self._by_subject[subject_id] = session_id
        if previous is not None and previous is not monitor:
            previous.terminate(TerminationReason.SUPERSEDED)
        return monitor

    def get(self, session_id: str) -> Optional[LivenessMonitor]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> LivenessMonitor:
        """
        Return the live monitor for a session.

        Unknown sessions are treated as terminated: the server cannot
        vouch for a channel it has no record of.
        """
        monitor = self.get(session_id)
        if monitor is None:
            raise DeviceGateError(ErrorKind.SESSION_TERMINATED, "no live session for credential")
        monitor.ensure_active()
        return monitor

    def active_count(self) -> int:
        with self._lock:
            monitors = list(self._sessions.values())
        return sum(1 for m in monitors if m.check() != LivenessPhase.TERMINATED)

    def sweep(self) -> List[LivenessMonitor]:
        """Apply every countdown and evict terminated sessions."""
        with self._lock:
            monitors = list(self._sessions.values())
        terminated = [m for m in monitors if m.check() == LivenessPhase.TERMINATED]
        with self._lock:
            for m in terminated:
                if self._sessions.get(m.session_id) is m:
                    del self._sessions[m.session_id]
                if self._by_subject.get(m.subject_id) == m.session_id:
                    del self._by_subject[m.subject_id]
        return terminated

    # ---- background sweeper --------------------------------------------

    def start_sweeper(self, interval_seconds: float = 1.0) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, args=(interval_seconds,),
            name="liveness-sweeper", daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _run_sweeper(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")
