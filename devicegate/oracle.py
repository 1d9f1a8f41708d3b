"""
Ownership oracles.

The oracle answers "does this address hold the asset identified by
``evidence_key``?". The networked implementation asks an ERC-721
contract for ``balanceOf(address)`` over JSON-RPC. Failures surface as
``OracleUnavailable``; an unreachable oracle is never reported as
"does not hold".
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

from .config import Settings
from .errors import DeviceGateError, ErrorKind
from .rate_limit import TokenBucketLimiter
from .security import ValidationError, validate_subject_address

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass(frozen=True)
class OwnershipResult:
    holds: bool
    quantity: int
    evidence_key: str
    network_name: Optional[str] = None


class OwnershipOracle(ABC):
    """External source of truth for asset ownership."""

    network_name: Optional[str] = None

    @abstractmethod
    def check(self, subject_address: str, evidence_key: str) -> OwnershipResult:
        """
        Query ownership.

        Raises:
            DeviceGateError: OracleUnavailable when no answer can be obtained
        """


class StaticOwnershipOracle(OwnershipOracle):
    """In-memory holdings, for development and tests."""

    network_name = "static"

    def __init__(self, holdings: Optional[Dict[Tuple[str, str], int]] = None):
        self._holdings: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()
        self.calls = 0
        self.available = True
        for (address, key), qty in (holdings or {}).items():
            self.set_balance(address, key, qty)

    def set_balance(self, subject_address: str, evidence_key: str, quantity: int) -> None:
        with self._lock:
            self._holdings[(subject_address.lower(), evidence_key.lower())] = quantity

    def check(self, subject_address: str, evidence_key: str) -> OwnershipResult:
        with self._lock:
            self.calls += 1
            if not self.available:
                raise DeviceGateError(ErrorKind.ORACLE_UNAVAILABLE, "static oracle disabled")
            qty = self._holdings.get((subject_address.lower(), evidence_key.lower()), 0)
        return OwnershipResult(holds=qty > 0, quantity=qty, evidence_key=evidence_key,
                               network_name=self.network_name)


def encode_balance_of(subject_address: str) -> str:
    """ABI-encode ``balanceOf(address)`` call data."""
    return BALANCE_OF_SELECTOR + subject_address.lower()[2:].rjust(64, "0")


class JsonRpcOwnershipOracle(OwnershipOracle):
    """ERC-721 ``balanceOf`` via ``eth_call``, throttled by a token bucket."""

    def __init__(
        self,
        rpc_url: str,
        network_name: str = "Sepolia Testnet",
        timeout_seconds: float = 5.0,
        rate_per_second: float = 5.0,
        burst: int = 10,
        session: Optional[requests.Session] = None,
    ):
        if not rpc_url:
            raise ValueError("ORACLE_RPC_URL must be configured for the jsonrpc oracle")
        self._url = rpc_url
        self.network_name = network_name
        self._timeout = timeout_seconds
        self._bucket = TokenBucketLimiter(rate=rate_per_second, capacity=burst)
        self._session = session or requests.Session()
        self._ids = 0
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            self._ids += 1
            return self._ids

    def check(self, subject_address: str, evidence_key: str) -> OwnershipResult:
        try:
            address = validate_subject_address(subject_address)
            contract = validate_subject_address(evidence_key)
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, e.message) from e

        if not self._bucket.allow("rpc"):
            raise DeviceGateError(
                ErrorKind.ORACLE_UNAVAILABLE,
                "oracle rate limit reached",
                retry_after=self._bucket.retry_after("rpc"),
            )

        body = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "eth_call",
            "params": [{"to": contract, "data": encode_balance_of(address)}, "latest"],
        }
        try:
            r = self._session.post(self._url, json=body, timeout=self._timeout)
            r.raise_for_status()
            reply = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Oracle request failed: %s", type(e).__name__)
            raise DeviceGateError(ErrorKind.ORACLE_UNAVAILABLE, "oracle request failed") from e

        if not isinstance(reply, dict) or "error" in reply or "result" not in reply:
            raise DeviceGateError(ErrorKind.ORACLE_UNAVAILABLE, "oracle returned an error")

        try:
            quantity = int(reply["result"], 16)
        except (TypeError, ValueError) as e:
            raise DeviceGateError(ErrorKind.ORACLE_UNAVAILABLE, "undecodable oracle result") from e

        return OwnershipResult(holds=quantity > 0, quantity=quantity,
                               evidence_key=evidence_key, network_name=self.network_name)


def get_oracle(settings: Settings) -> OwnershipOracle:
    """Build the oracle named by ``settings.oracle_backend``."""
    if settings.oracle_backend == "jsonrpc":
        return JsonRpcOwnershipOracle(
            rpc_url=settings.oracle_rpc_url,
            network_name=settings.oracle_network_name,
            timeout_seconds=settings.oracle_timeout_seconds,
            rate_per_second=settings.oracle_rate_per_second,
            burst=settings.oracle_burst,
        )
    return StaticOwnershipOracle()
