"""
Desktop-client side of DeviceGate.

``ClientSession`` is the single typed container for everything the client
holds about its session. It runs its own LivenessMonitor; when that
monitor terminates, every field is wiped and all further protected calls
raise SessionTerminated.
"""

import logging
import os
import platform
import threading
from typing import Any, Dict, List, Optional

import requests

from .credentials import decode_payload
from .errors import DeviceGateError, ErrorKind
from .heartbeat import verify_trigger_proof
from .liveness import LivenessMonitor, TerminationReason
from .models import DeviceCharacteristics, GraphicsInfo, OsInfo, ProcessorInfo
from .security import CREDENTIAL_HEADER, IDENTITY_HEADER
from .util import MonotonicClock

logger = logging.getLogger(__name__)


def collect_characteristics() -> DeviceCharacteristics:
    """Best-effort characteristics of the local machine; gaps stay None."""
    return DeviceCharacteristics(
        cpu=ProcessorInfo(
            model=platform.processor() or None,
            architecture=platform.machine() or None,
            cores=os.cpu_count(),
        ),
        gpu=GraphicsInfo(),
        os=OsInfo(
            platform=platform.system() or None,
            architecture=platform.architecture()[0] or None,
            version=platform.release() or None,
        ),
    )


class ClientSession:
    """State of one authenticated session instance."""

    def __init__(self, device_identity: str, credential: str, expires_at: float,
                 clock, timeout_seconds: float = 40):
        payload = decode_payload(credential) or {}
        self._lock = threading.RLock()
        self._device_identity: Optional[str] = device_identity
        self._credential: Optional[str] = credential
        self._session_nonce: Optional[str] = payload.get("nonce")
        self._expires_at: Optional[float] = expires_at
        self._entitlements: Dict[str, Dict[str, Any]] = {}
        self._automation_state: Dict[str, Any] = {}
        self.monitor = LivenessMonitor(self._session_nonce or "", device_identity, clock, timeout_seconds)
        self.monitor.add_listener(self._on_terminated)

    def _on_terminated(self, monitor: LivenessMonitor, reason: TerminationReason) -> None:
        logger.warning("Session terminated (%s); discarding local state", reason.value)
        with self._lock:
            self._device_identity = None
            self._credential = None
            self._session_nonce = None
            self._expires_at = None
            self._entitlements.clear()
            self._automation_state.clear()

    @property
    def terminated(self) -> bool:
        return self.monitor.terminated_event.is_set()

    def require_active(self) -> None:
        self.monitor.ensure_active()

    @property
    def device_identity(self) -> str:
        self.require_active()
        return self._device_identity

    @property
    def credential(self) -> str:
        self.require_active()
        return self._credential

    @property
    def session_nonce(self) -> str:
        self.require_active()
        return self._session_nonce

    @property
    def expires_at(self) -> float:
        self.require_active()
        return self._expires_at

    def headers(self) -> Dict[str, str]:
        self.require_active()
        with self._lock:
            return {IDENTITY_HEADER: self._device_identity, CREDENTIAL_HEADER: self._credential}

    def remember_entitlement(self, record: Dict[str, Any]) -> None:
        self.require_active()
        with self._lock:
            self._entitlements[record["evidence_key"]] = record

    def entitlements(self) -> Dict[str, Dict[str, Any]]:
        self.require_active()
        with self._lock:
            return dict(self._entitlements)

    def set_state(self, key: str, value: Any) -> None:
        self.require_active()
        with self._lock:
            self._automation_state[key] = value

    def get_state(self, key: str, default: Any = None) -> Any:
        self.require_active()
        with self._lock:
            return self._automation_state.get(key, default)

    def terminate(self, reason: TerminationReason = TerminationReason.SHUTDOWN) -> None:
        self.monitor.terminate(reason)


class DeviceClient:
    """
    HTTP client for a DeviceGate server.

    Args:
        base_url: Server root, e.g. ``http://127.0.0.1:8000``
        http: Anything with the ``requests.Session`` request API
        clock: Clock used by the local liveness monitor
    """

    FATAL_KINDS = frozenset({ErrorKind.SESSION_TERMINATED, ErrorKind.SEQUENCE_VIOLATION})

    def __init__(self, base_url: str = "", http=None, clock=None,
                 timeout_seconds: float = 40, request_timeout: float = 10):
        self._base = base_url.rstrip("/")
        self._http = http or requests.Session()
        self._clock = clock or MonotonicClock()
        self._timeout = timeout_seconds
        self._request_timeout = request_timeout
        self.session: Optional[ClientSession] = None
        self.interval_seconds: float = 30

    def _url(self, path: str) -> str:
        return f"{self._base}{path}"

    def _unwrap(self, response) -> Any:
        try:
            body = response.json()
        except ValueError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED,
                                  f"non-JSON response ({response.status_code})") from e
        if body.get("success"):
            return body.get("data")
        error = body.get("error") or {}
        try:
            kind = ErrorKind(error.get("code"))
        except ValueError:
            kind = ErrorKind.VALIDATION_FAILED
        raise DeviceGateError(kind, error.get("message", ""), retry_after=error.get("retry_after"))

    def _request(self, method: str, path: str, **kwargs) -> Any:
        kwargs.setdefault("timeout", self._request_timeout)
        response = self._http.request(method, self._url(path), **kwargs)
        return self._unwrap(response)

    def _session_request(self, method: str, path: str, **kwargs) -> Any:
        session = self._require_session()
        try:
            return self._request(method, path, headers=session.headers(), **kwargs)
        except DeviceGateError as e:
            if e.kind in self.FATAL_KINDS:
                session.terminate(TerminationReason.SEQUENCE_VIOLATION
                                  if e.kind == ErrorKind.SEQUENCE_VIOLATION else TerminationReason.SHUTDOWN)
            raise

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise DeviceGateError(ErrorKind.MALFORMED_CREDENTIAL, "not authenticated")
        self.session.require_active()
        return self.session

    # ---- authentication ------------------------------------------------

    def authenticate(self, characteristics: Optional[DeviceCharacteristics] = None,
                     wallet_address: Optional[str] = None) -> ClientSession:
        """Submit characteristics and start a fresh session instance."""
        if self.session is not None and not self.session.terminated:
            self.session.terminate(TerminationReason.SUPERSEDED)

        ch = characteristics or collect_characteristics()
        body: Dict[str, Any] = {"characteristics": ch.model_dump()}
        if wallet_address:
            body["wallet_address"] = wallet_address
        data = self._request("POST", "/api/auth/fingerprint", json=body)
        self.interval_seconds = data.get("heartbeat_interval", self.interval_seconds)
        self.session = ClientSession(
            device_identity=data["device_identity"],
            credential=data["session_credential"],
            expires_at=data["expires_at"],
            clock=self._clock,
            timeout_seconds=self._timeout,
        )
        return self.session

    # ---- heartbeat -----------------------------------------------------

    def heartbeat_once(self) -> Dict[str, Any]:
        """
        Poll for the next trigger, check it, and acknowledge it.

        A trigger with a bad proof or an unexpected sequence terminates the
        local session before anything is sent back.
        """
        session = self._require_session()
        trigger = self._session_request("GET", "/api/heartbeat/next")
        sequence = int(trigger["sequence"])
        if not verify_trigger_proof(session.device_identity, session.session_nonce,
                                    sequence, trigger.get("proof", "")):
            session.terminate(TerminationReason.SEQUENCE_VIOLATION)
            raise DeviceGateError(ErrorKind.SEQUENCE_VIOLATION, "heartbeat trigger proof invalid")

        session.monitor.receive(sequence)
        return self._session_request(
            "POST", "/api/heartbeat",
            json={"sequence": sequence, "subject_id": session.device_identity},
        )

    def run_heartbeat(self, stop: threading.Event) -> None:
        """Heartbeat until ``stop`` is set or the session ends."""
        while not stop.is_set():
            session = self.session
            if session is None or session.terminated:
                return
            try:
                self.heartbeat_once()
            except requests.RequestException as e:
                # Transport errors are left to the local countdown.
                logger.warning("Heartbeat transport error: %s", type(e).__name__)
                session.monitor.check()
            except DeviceGateError as e:
                if e.kind in self.FATAL_KINDS or session.terminated:
                    return
                logger.warning("Heartbeat rejected: %s", e.kind.value)
            stop.wait(self.interval_seconds)

    # ---- protected calls -----------------------------------------------

    def bind_wallet(self, wallet_address: str) -> Dict[str, Any]:
        return self._session_request("POST", "/api/wallet", json={"wallet_address": wallet_address})

    def check_entitlement(self, evidence_key: str, force_refresh: bool = False) -> Dict[str, Any]:
        record = self._session_request(
            "POST", "/api/entitlements/check",
            json={"evidence_key": evidence_key, "force_refresh": force_refresh},
        )
        self._require_session().remember_entitlement(record)
        return record

    def available_scripts(self) -> List[Dict[str, Any]]:
        return self._session_request("GET", "/api/scripts/available")

    def fetch_script(self, script_id: str) -> Dict[str, Any]:
        return self._session_request("GET", f"/api/scripts/{script_id}")
