"""
Session credentials.

A credential is a stateless bearer token::

    base64url(canonical_json({device_identity, issued_at, nonce})) "." signature

The signature covers the encoded payload exactly as transmitted, so any
altered byte fails verification before the payload is even decoded.
There is no revocation list; a credential ends at ``issued_at + ttl``.
Liveness, not the token, is what ends a session early.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import DeviceGateError, ErrorKind
from .keys import CredentialSigner
from .security import is_valid_device_identity
from .util import b64url_decode, b64url_encode, canonicalize, generate_nonce

SEPARATOR = "."
CREDENTIAL_VERSION = 1


@dataclass(frozen=True)
class SessionCredential:
    token: str
    device_identity: str
    issued_at: float
    expires_at: float
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_credential": self.token,
            "device_identity": self.device_identity,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Binary outcome of credential verification; ``failure`` says why not."""
    valid: bool
    device_identity: Optional[str] = None
    issued_at: Optional[float] = None
    session_id: Optional[str] = None
    failure: Optional[ErrorKind] = None

    @classmethod
    def reject(cls, kind: ErrorKind) -> "VerificationResult":
        return cls(valid=False, failure=kind)


def decode_payload(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode the payload half of a token without checking the signature.

    Used by clients that need their own session nonce; never use the
    result for an authorization decision.
    """
    payload_part, _, _ = token.partition(SEPARATOR)
    try:
        data = json.loads(b64url_decode(payload_part).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


class CredentialManager:
    """Issues and verifies session credentials bound to a device identity."""

    def __init__(self, signer: CredentialSigner, clock, ttl_seconds: int = 86400):
        self._signer = signer
        self._clock = clock
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def issue(self, device_identity: str) -> SessionCredential:
        if not is_valid_device_identity(device_identity):
            raise DeviceGateError(ErrorKind.MALFORMED_IDENTITY, "cannot issue for malformed identity")

        issued_at = self._clock.now()
        nonce = generate_nonce(16)
        payload = {
            "v": CREDENTIAL_VERSION,
            "device_identity": device_identity,
            "issued_at": issued_at,
            "nonce": nonce,
        }
        encoded = b64url_encode(canonicalize(payload))
        signature = self._signer.sign(encoded.encode("ascii"))
        return SessionCredential(
            token=f"{encoded}{SEPARATOR}{signature}",
            device_identity=device_identity,
            issued_at=issued_at,
            expires_at=issued_at + self._ttl,
            session_id=nonce,
        )

    def verify(self, token: Optional[str]) -> VerificationResult:
        if not token or not isinstance(token, str):
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)

        parts = token.split(SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)
        encoded, signature = parts

        try:
            payload_bytes = encoded.encode("ascii")
        except UnicodeEncodeError:
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)

        if not self._signer.verify(payload_bytes, signature):
            return VerificationResult.reject(ErrorKind.CREDENTIAL_SIGNATURE_INVALID)

        payload = decode_payload(token)
        if payload is None:
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)

        if payload.get("v") != CREDENTIAL_VERSION:
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)

        device_identity = payload.get("device_identity")
        issued_at = payload.get("issued_at")
        nonce = payload.get("nonce")
        if (not is_valid_device_identity(device_identity)
                or not isinstance(issued_at, (int, float)) or isinstance(issued_at, bool)
                or not isinstance(nonce, str) or not nonce):
            return VerificationResult.reject(ErrorKind.MALFORMED_CREDENTIAL)

        if self._clock.now() - issued_at > self._ttl:
            return VerificationResult.reject(ErrorKind.CREDENTIAL_EXPIRED)

        return VerificationResult(
            valid=True,
            device_identity=device_identity,
            issued_at=float(issued_at),
            session_id=nonce,
        )

    def require(self, token: Optional[str]) -> VerificationResult:
        """Verify and raise DeviceGateError with the failure kind if invalid."""
        result = self.verify(token)
        if not result.valid:
            raise DeviceGateError(result.failure, "session credential rejected")
        return result
