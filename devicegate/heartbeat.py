"""
Server side of the heartbeat protocol.

The server drives cadence: clients poll for the next trigger, check its
proof, and acknowledge it with the trigger's sequence number. The
server's LivenessMonitor for the session decides whether the channel is
still live.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from .errors import DeviceGateError, ErrorKind
from .liveness import (
    HeartbeatAck,
    LivenessMonitor,
    LivenessRegistry,
    SequenceViolation,
    TerminationReason,
)
from .logging_config import audit_log
from .util import constant_time_compare, sha256_hex

logger = logging.getLogger(__name__)


def trigger_proof(device_identity: str, session_nonce: str, sequence: int) -> str:
    """Digest binding a trigger to the session it was issued for."""
    return sha256_hex(f"{device_identity}:{session_nonce}:{sequence}")


def verify_trigger_proof(device_identity: str, session_nonce: str, sequence: int, proof: str) -> bool:
    return constant_time_compare(trigger_proof(device_identity, session_nonce, sequence), proof)


@dataclass(frozen=True)
class HeartbeatTrigger:
    sequence: int
    issued_at: float
    interval: int
    proof: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "sequence": self.sequence,
            "issued_at": self.issued_at,
            "interval": self.interval,
            "proof": self.proof,
        }


class HeartbeatService:
    """Owns the per-session monitors and turns heartbeats into verdicts."""

    def __init__(self, clock, timeout_seconds: int = 40, interval_seconds: int = 30):
        if interval_seconds >= timeout_seconds:
            raise ValueError("heartbeat interval must be shorter than the timeout")
        self._clock = clock
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.registry = LivenessRegistry(clock, timeout_seconds)
        self.registry.add_termination_listener(self._log_termination)

    def add_termination_listener(self, listener) -> None:
        self.registry.add_termination_listener(listener)

    @staticmethod
    def _log_termination(monitor: LivenessMonitor, reason: TerminationReason) -> None:
        audit_log.session_terminated(monitor.session_id, monitor.subject_id, reason.value)

    def open_session(self, session_id: str, subject_id: str) -> LivenessMonitor:
        return self.registry.open(session_id, subject_id)

    def next_trigger(self, session_id: str, device_identity: str) -> HeartbeatTrigger:
        """The trigger the client must acknowledge next."""
        monitor = self.registry.require(session_id)
        sequence = monitor.snapshot().expected_sequence
        return HeartbeatTrigger(
            sequence=sequence,
            issued_at=self._clock.now(),
            interval=self.interval_seconds,
            proof=trigger_proof(device_identity, session_id, sequence),
        )

    def receive(self, session_id: str, subject_id: str, sequence: int) -> HeartbeatAck:
        """
        Feed one heartbeat into the session's monitor.

        Raises:
            DeviceGateError: IdentityMismatch, SequenceViolation or SessionTerminated
        """
        monitor = self.registry.require(session_id)
        if monitor.subject_id != subject_id:
            raise DeviceGateError(ErrorKind.IDENTITY_MISMATCH, "heartbeat subject does not match session")

        try:
            ack = monitor.receive(sequence)
        except SequenceViolation as e:
            audit_log.sequence_violation(session_id, e.expected, e.received)
            raise
        audit_log.heartbeat_accepted(session_id, sequence)
        return ack

    def ensure_active(self, session_id: str) -> LivenessMonitor:
        return self.registry.require(session_id)

    def sweep(self) -> List[LivenessMonitor]:
        return self.registry.sweep()

    def start(self) -> None:
        self.registry.start_sweeper(interval_seconds=1.0)

    def stop(self) -> None:
        self.registry.stop_sweeper()
