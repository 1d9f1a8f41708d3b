"""
Access gateway.

Every request is checked before any handler runs:

1. Restricted path prefixes are matched against their address allow-list.
2. The path is classified into a tier and the tier's requirement enforced:

   - OPEN: nothing required.
   - IDENTITY: a structurally valid device identity header.
   - SESSION: identity header plus a credential that verifies, names the
     same identity, and whose session is still live.

Paths that match no rule are SESSION.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .credentials import CredentialManager
from .errors import DeviceGateError, ErrorKind
from .logging_config import audit_log
from .security import (
    address_in_allowlist,
    extract_client_address,
    extract_device_identity,
    extract_session_credential,
    is_valid_device_identity,
)
from .util import constant_time_compare

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    OPEN = "open"
    IDENTITY = "identity"
    SESSION = "session"


@dataclass(frozen=True)
class RouteRule:
    """Exact path, or a prefix when ``pattern`` ends with ``/``."""
    pattern: str
    tier: Tier

    def matches(self, path: str) -> bool:
        if self.pattern.endswith("/"):
            return path.startswith(self.pattern)
        return path == self.pattern


DEFAULT_RULES: Tuple[RouteRule, ...] = (
    RouteRule("/api/health", Tier.OPEN),
    RouteRule("/api/status", Tier.OPEN),
    RouteRule("/api/auth/fingerprint", Tier.OPEN),
    RouteRule("/docs", Tier.OPEN),
    RouteRule("/openapi.json", Tier.OPEN),
    RouteRule("/api/auth/verify", Tier.IDENTITY),
    RouteRule("/api/heartbeat", Tier.SESSION),
    RouteRule("/api/heartbeat/next", Tier.SESSION),
    RouteRule("/api/entitlements/check", Tier.SESSION),
    RouteRule("/api/scripts/", Tier.SESSION),
    RouteRule("/api/wallet", Tier.SESSION),
)


@dataclass(frozen=True)
class GatewayContext:
    """Validated values forwarded to handlers."""
    tier: Tier
    client_address: str
    device_identity: Optional[str] = None
    session_id: Optional[str] = None
    issued_at: Optional[float] = None
    admin: bool = False


class AccessGateway:
    """
    Args:
        credentials: Verifies session credentials
        allowlist_source: Returns the current {prefix: [addresses]} mapping
        rules: Tier rules, first match wins
        liveness_check: Raises SessionTerminated for a dead session id
        trusted_proxies: Peers whose forwarding headers name the real caller
    """

    def __init__(
        self,
        credentials: CredentialManager,
        allowlist_source: Callable[[], Dict[str, List[str]]],
        rules: Sequence[RouteRule] = DEFAULT_RULES,
        liveness_check: Optional[Callable[[str], object]] = None,
        trusted_proxies: Sequence[str] = (),
    ):
        self._credentials = credentials
        self._allowlist_source = allowlist_source
        self._rules = tuple(rules)
        self._liveness_check = liveness_check
        self._trusted_proxies = tuple(trusted_proxies)

    def classify(self, path: str) -> Tier:
        for rule in self._rules:
            if rule.matches(path):
                return rule.tier
        return Tier.SESSION

    def restricted_prefix(self, path: str) -> Optional[Tuple[str, List[str]]]:
        for prefix, addresses in self._allowlist_source().items():
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return prefix, addresses
        return None

    def authorize(self, path: str, headers: Mapping[str, str], peer: Optional[str] = None) -> GatewayContext:
        """
        Enforce the allow-list and tier for one request.

        Raises:
            DeviceGateError: with the specific rejection kind
        """
        client_address = extract_client_address(headers, peer, self._trusted_proxies)

        restricted = self.restricted_prefix(path)
        if restricted is not None:
            _, addresses = restricted
            if not address_in_allowlist(client_address, addresses):
                audit_log.admin_access_denied(client_address, path)
                raise DeviceGateError(ErrorKind.ADMIN_ACCESS_DENIED, "address not allowed for this path")
            return GatewayContext(tier=Tier.OPEN, client_address=client_address, admin=True)

        tier = self.classify(path)
        if tier == Tier.OPEN:
            return GatewayContext(tier=tier, client_address=client_address)

        device_identity = extract_device_identity(headers)
        if not is_valid_device_identity(device_identity):
            audit_log.credential_rejected(ErrorKind.MALFORMED_IDENTITY.value, path)
            raise DeviceGateError(ErrorKind.MALFORMED_IDENTITY, "device identity header missing or malformed")

        if tier == Tier.IDENTITY:
            return GatewayContext(tier=tier, client_address=client_address, device_identity=device_identity)

        token = extract_session_credential(headers)
        if not token:
            audit_log.credential_rejected(ErrorKind.MALFORMED_CREDENTIAL.value, path, device_identity)
            raise DeviceGateError(ErrorKind.MALFORMED_CREDENTIAL, "session credential missing")

        result = self._credentials.verify(token)
        if not result.valid:
            audit_log.credential_rejected(result.failure.value, path, device_identity)
            raise DeviceGateError(result.failure, "session credential rejected")

        if not constant_time_compare(result.device_identity, device_identity):
            audit_log.credential_rejected(ErrorKind.IDENTITY_MISMATCH.value, path, device_identity)
            raise DeviceGateError(ErrorKind.IDENTITY_MISMATCH, "credential was issued to a different device")

        if self._liveness_check is not None:
            self._liveness_check(result.session_id)

        return GatewayContext(
            tier=tier,
            client_address=client_address,
            device_identity=device_identity,
            session_id=result.session_id,
            issued_at=result.issued_at,
        )
