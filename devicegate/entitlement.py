"""
Entitlement cache in front of the ownership oracle.

Lookup policy for ``check(subject_id, evidence_key, force_refresh)``:

1. ``force_refresh`` skips the cache.
2. No cached row: ask the oracle.
3. Cached positive younger than the freshness window: served from cache.
   This is the only path that avoids the oracle.
4. Cached negative, or stale positive: ask the oracle again.

Every oracle answer is upserted, one row per (subject_id, evidence_key).
Concurrent checks of the same key share one in-flight oracle call.
``OracleUnavailable`` reaches every waiter and nothing is written.
"""

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .db import Database
from .logging_config import audit_log
from .oracle import OwnershipOracle
from .errors import DeviceGateError, ErrorKind

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_ORACLE = "oracle"
SOURCE_UNBOUND = "unbound"


@dataclass(frozen=True)
class EntitlementRecord:
    subject_id: str
    evidence_key: str
    holds: bool
    quantity: int
    checked_at: float
    network_name: Optional[str] = None
    source: str = SOURCE_CACHE

    @classmethod
    def from_row(cls, row: Dict) -> "EntitlementRecord":
        return cls(
            subject_id=row["subject_id"],
            evidence_key=row["evidence_key"],
            holds=bool(row["holds"]),
            quantity=int(row["quantity"]),
            checked_at=float(row["checked_at"]),
            network_name=row.get("network_name"),
            source=SOURCE_CACHE,
        )

    def to_dict(self) -> Dict:
        return {
            "evidence_key": self.evidence_key,
            "holds": self.holds,
            "quantity": self.quantity,
            "checked_at": self.checked_at,
            "network_name": self.network_name,
            "source": self.source,
        }


class _Flight:
    __slots__ = ("future", "waiters")

    def __init__(self):
        self.future: Future = Future()
        self.waiters = 0


class EntitlementCache:
    """
    Args:
        db: Persistent store for records
        oracle: Ownership oracle
        clock: Clock with ``now()``
        freshness_seconds: How long a positive answer is trusted
        negative_recheck_seconds: Optional backoff for negative answers;
            0 means negatives are always rechecked
        resolve_address: Maps a subject to the address the oracle is asked
            about; returns None when the subject has no address bound
    """

    def __init__(
        self,
        db: Database,
        oracle: OwnershipOracle,
        clock,
        freshness_seconds: int = 86400,
        negative_recheck_seconds: int = 0,
        resolve_address: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self._db = db
        self._oracle = oracle
        self._clock = clock
        self._freshness = freshness_seconds
        self._negative_recheck = negative_recheck_seconds
        self._resolve = resolve_address or (lambda subject_id: subject_id)
        self._lock = threading.Lock()
        self._flights: Dict[Tuple[str, str], _Flight] = {}

    def cached(self, subject_id: str, evidence_key: str) -> Optional[EntitlementRecord]:
        row = self._db.get_entitlement(subject_id, evidence_key)
        return EntitlementRecord.from_row(row) if row else None

    def is_trusted(self, record: EntitlementRecord) -> bool:
        age = self._clock.now() - record.checked_at
        if record.holds:
            return age < self._freshness
        return self._negative_recheck > 0 and age < self._negative_recheck

    def check(self, subject_id: str, evidence_key: str, force_refresh: bool = False) -> EntitlementRecord:
        if not force_refresh:
            record = self._trusted_cached(subject_id, evidence_key)
            if record is not None:
                return record
        return self._single_flight(subject_id, evidence_key, force_refresh)

    def check_all(self, subject_id: str, evidence_keys: List[str],
                  force_refresh: bool = False) -> List[EntitlementRecord]:
        return [self.check(subject_id, key, force_refresh) for key in evidence_keys]

    def in_flight(self, subject_id: str, evidence_key: str) -> int:
        """Number of callers waiting on an in-flight call for this key (leader excluded)."""
        with self._lock:
            flight = self._flights.get((subject_id, evidence_key))
            return flight.waiters if flight else 0

    def forget_subject(self, subject_id: str) -> int:
        """Discard every cached record for a subject."""
        return self._db.delete_entitlements(subject_id)

    def _trusted_cached(self, subject_id: str, evidence_key: str) -> Optional[EntitlementRecord]:
        record = self.cached(subject_id, evidence_key)
        if record is None or not self.is_trusted(record):
            return None
        audit_log.entitlement_decision(subject_id, evidence_key, record.holds,
                                       SOURCE_CACHE, record.quantity)
        return record

    def _single_flight(self, subject_id: str, evidence_key: str,
                       force_refresh: bool = False) -> EntitlementRecord:
        key = (subject_id, evidence_key)
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
            else:
                flight.waiters += 1

        if not leader:
            return flight.future.result()

        try:
            # An earlier flight may have stored a fresh record after our first read.
            record = None if force_refresh else self._trusted_cached(subject_id, evidence_key)
            if record is None:
                record = self._query_oracle(subject_id, evidence_key)
        except BaseException as e:
            flight.future.set_exception(e)
            raise
        else:
            flight.future.set_result(record)
            return record
        finally:
            with self._lock:
                self._flights.pop(key, None)

    def _query_oracle(self, subject_id: str, evidence_key: str) -> EntitlementRecord:
        now = self._clock.now()
        address = self._resolve(subject_id)
        if not address:
            # Nothing to ask about; not persisted so binding an address later takes effect at once.
            return EntitlementRecord(subject_id, evidence_key, False, 0, now, None, SOURCE_UNBOUND)

        try:
            result = self._oracle.check(address, evidence_key)
        except DeviceGateError as e:
            if e.kind == ErrorKind.ORACLE_UNAVAILABLE:
                audit_log.oracle_unavailable(evidence_key, e.message)
            raise

        checked_at = self._clock.now()
        self._db.upsert_entitlement(
            subject_id, evidence_key, result.holds, result.quantity,
            result.network_name, checked_at,
        )
        audit_log.entitlement_decision(subject_id, evidence_key, result.holds,
                                       SOURCE_ORACLE, result.quantity)
        return EntitlementRecord(
            subject_id=subject_id,
            evidence_key=evidence_key,
            holds=result.holds,
            quantity=result.quantity,
            checked_at=checked_at,
            network_name=result.network_name,
            source=SOURCE_ORACLE,
        )
