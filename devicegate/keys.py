"""
Key management module for DeviceGate.

Provides signers for session credentials: an HMAC-SHA256 signer keyed by
the server secret (default) and an Ed25519 signer for deployments that
verify credentials on hosts that must not hold the signing secret.
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from .config import Settings
from .util import b64d, b64e, b64url_decode, b64url_encode, constant_time_compare, hmac_sha256_hex


class CredentialSigner(ABC):
    """Abstract interface for signing and verifying credential payloads."""

    algorithm: str = ""

    @abstractmethod
    def sign(self, payload: bytes) -> str:
        """
        Sign a payload and return the signature as a token-safe string.

        Args:
            payload: The serialized credential payload

        Returns:
            Signature string (no ``.`` characters)
        """

    @abstractmethod
    def verify(self, payload: bytes, signature: str) -> bool:
        """Return True if ``signature`` matches ``payload``."""


class HmacCredentialSigner(CredentialSigner):
    """HMAC-SHA256 over the payload, hex encoded, compared in constant time."""

    algorithm = "hmac-sha256"

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("session secret must be configured")
        self._secret = secret.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        return hmac_sha256_hex(self._secret, payload)

    def verify(self, payload: bytes, signature: str) -> bool:
        return constant_time_compare(self.sign(payload), signature)


class Ed25519CredentialSigner(CredentialSigner):
    """
    Ed25519 signatures (URL-safe base64).

    A verify-only instance can be built from the public key alone.
    """

    algorithm = "ed25519"

    def __init__(self, private_key_b64: str = "", public_key_b64: str = ""):
        self._lock = threading.RLock()
        self._sk: Optional[SigningKey] = None
        if private_key_b64:
            self._sk = SigningKey(b64d(private_key_b64))
            self._vk = self._sk.verify_key
        elif public_key_b64:
            self._vk = VerifyKey(b64d(public_key_b64))
        else:
            raise ValueError("Ed25519 signer requires a private or public key")

    def sign(self, payload: bytes) -> str:
        if self._sk is None:
            raise RuntimeError("Ed25519 signer is verify-only")
        with self._lock:
            return b64url_encode(self._sk.sign(payload).signature)

    def verify(self, payload: bytes, signature: str) -> bool:
        try:
            raw = b64url_decode(signature)
            # Reject non-canonical encodings that decode to the same bytes.
            if b64url_encode(raw) != signature:
                return False
            self._vk.verify(payload, raw)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    @property
    def public_key_b64(self) -> str:
        return b64e(bytes(self._vk))


def generate_ed25519_keypair() -> Tuple[str, str]:
    """Return (private_key_b64, public_key_b64)."""
    sk = SigningKey.generate()
    return b64e(bytes(sk)), b64e(bytes(sk.verify_key))


def get_signer(settings: Settings) -> CredentialSigner:
    """
    Factory function to create the configured credential signer.

    Args:
        settings: Resolved settings; ``credential_signer`` is "hmac" or "ed25519"

    Returns:
        Configured CredentialSigner instance
    """
    if settings.credential_signer == "ed25519":
        return Ed25519CredentialSigner(
            private_key_b64=settings.ed25519_private_key_b64,
            public_key_b64=settings.ed25519_public_key_b64,
        )
    return HmacCredentialSigner(settings.session_secret)
