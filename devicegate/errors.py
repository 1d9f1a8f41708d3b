"""
Error kinds for DeviceGate.

Every authentication or authorization failure is reported with a specific
kind so the caller can tell "re-authenticate" from "wait and retry" from
"fatal, close the application".
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Reason a request was rejected."""
    MALFORMED_IDENTITY = "MalformedIdentity"
    MALFORMED_CREDENTIAL = "MalformedCredential"
    CREDENTIAL_EXPIRED = "CredentialExpired"
    CREDENTIAL_SIGNATURE_INVALID = "CredentialSignatureInvalid"
    IDENTITY_MISMATCH = "IdentityMismatch"
    SEQUENCE_VIOLATION = "SequenceViolation"
    SESSION_TERMINATED = "SessionTerminated"
    ORACLE_UNAVAILABLE = "OracleUnavailable"
    ADMIN_ACCESS_DENIED = "AdminAccessDenied"
    ENTITLEMENT_REQUIRED = "EntitlementRequired"
    VALIDATION_FAILED = "ValidationFailed"
    RATE_LIMITED = "RateLimited"
    NOT_FOUND = "NotFound"


HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_IDENTITY: 401,
    ErrorKind.MALFORMED_CREDENTIAL: 401,
    ErrorKind.CREDENTIAL_EXPIRED: 401,
    ErrorKind.CREDENTIAL_SIGNATURE_INVALID: 401,
    ErrorKind.IDENTITY_MISMATCH: 401,
    ErrorKind.SEQUENCE_VIOLATION: 409,
    ErrorKind.SESSION_TERMINATED: 410,
    ErrorKind.ORACLE_UNAVAILABLE: 503,
    ErrorKind.ADMIN_ACCESS_DENIED: 403,
    ErrorKind.ENTITLEMENT_REQUIRED: 403,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NOT_FOUND: 404,
}

# Kinds the caller may retry locally after a delay.
RETRYABLE = frozenset({ErrorKind.ORACLE_UNAVAILABLE, ErrorKind.RATE_LIMITED})


class DeviceGateError(Exception):
    """Raised by core components; carries the rejection kind."""

    def __init__(self, kind: ErrorKind, message: str = "", retry_after: Optional[float] = None):
        self.kind = kind
        self.message = message or kind.value
        self.retry_after = retry_after
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.kind, 400)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE

    @property
    def fatal(self) -> bool:
        return self.kind == ErrorKind.SESSION_TERMINATED

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.kind.value, "message": self.message}
        if self.retry_after is not None:
            body["retry_after"] = round(self.retry_after, 3)
        return body
