"""
Security module for DeviceGate.

Provides input validation, request field extraction and address allow-list matching.
"""

import re
from typing import Any, List, Mapping, Optional, Sequence

from .errors import DeviceGateError, ErrorKind


# ============================================================
# Input Validation
# ============================================================

HEX_PATTERN = re.compile(r'^[a-fA-F0-9]+$')
DEVICE_IDENTITY_PATTERN = re.compile(r'^[a-f0-9]{64}$')
SUBJECT_ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')
SCRIPT_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]{1,64}$')

DEVICE_IDENTITY_LENGTH = 64

IDENTITY_HEADER = "x-device-identity"
CREDENTIAL_HEADER = "x-session-credential"


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_hex(value: str, field_name: str, expected_length: Optional[int] = None) -> str:
    """
    Validate that a string is valid hexadecimal.

    Args:
        value: The string to validate
        field_name: Name of the field (for error messages)
        expected_length: Expected length of the hex string (optional)

    Returns:
        The validated (lowercased) hex string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.lower().strip()

    if not value:
        raise ValidationError(field_name, "cannot be empty")

    if not HEX_PATTERN.match(value):
        raise ValidationError(field_name, "must be valid hexadecimal")

    if expected_length and len(value) != expected_length:
        raise ValidationError(field_name, f"must be {expected_length} characters")

    return value


def validate_device_identity(value: Any) -> str:
    """
    Structurally validate a device identity (64 lowercase hex characters).

    Raises:
        DeviceGateError: MalformedIdentity
    """
    try:
        return validate_hex(value, "device_identity", expected_length=DEVICE_IDENTITY_LENGTH)
    except ValidationError as e:
        raise DeviceGateError(ErrorKind.MALFORMED_IDENTITY, e.message) from e


def is_valid_device_identity(value: Any) -> bool:
    return isinstance(value, str) and bool(DEVICE_IDENTITY_PATTERN.match(value))


def validate_subject_address(value: str) -> str:
    """Validate an EVM wallet address (0x + 40 hex characters)."""
    if not isinstance(value, str) or not SUBJECT_ADDRESS_PATTERN.match(value):
        raise ValidationError("wallet_address", "must be a 0x-prefixed 40 character hex address")
    return value.lower()


def validate_script_id(value: str) -> str:
    if not isinstance(value, str) or not SCRIPT_ID_PATTERN.match(value):
        raise ValidationError("script_id", "invalid format")
    return value


# ============================================================
# Request Field Extraction
# ============================================================

def extract_device_identity(headers: Mapping[str, str]) -> Optional[str]:
    """Return the raw device identity header, if any."""
    value = headers.get(IDENTITY_HEADER, "")
    return value.strip() or None


def extract_session_credential(headers: Mapping[str, str]) -> Optional[str]:
    """
    Return the session credential from its dedicated header, falling
    back to an ``Authorization: Bearer`` header.
    """
    token = headers.get(CREDENTIAL_HEADER, "").strip()
    if token:
        return token
    auth = headers.get("authorization", "")
    parts = auth.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def extract_client_address(headers: Mapping[str, str], peer: Optional[str] = None,
                           trusted_proxies: Sequence[str] = ()) -> str:
    """
    Determine the caller's network address.

    Forwarding headers are only read when the socket peer is a trusted
    proxy. In that case the first ``X-Forwarded-For`` hop wins, then
    ``X-Real-IP``, then ``CF-Connecting-IP``. Otherwise the peer is the
    caller.
    """
    peer_address = normalize_address(peer) if peer else "unknown"
    if not peer or not address_in_allowlist(peer_address, list(trusted_proxies)):
        return peer_address

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return normalize_address(forwarded.split(',')[0].strip())

    real = headers.get("x-real-ip", "")
    if real:
        return normalize_address(real.strip())

    cf = headers.get("cf-connecting-ip", "")
    if cf:
        return normalize_address(cf.strip())

    return peer_address


def normalize_address(address: str) -> str:
    """Strip the IPv4-mapped IPv6 prefix."""
    if address.startswith("::ffff:"):
        return address[len("::ffff:"):]
    return address


LOOPBACK = frozenset({"127.0.0.1", "::1"})


def address_in_allowlist(address: str, allowlist: List[str]) -> bool:
    """
    Exact match after normalisation; ``localhost`` in the list matches
    either loopback address.
    """
    normalized = normalize_address(address)
    for allowed in allowlist:
        if allowed == normalized or allowed == address:
            return True
        if allowed == "localhost" and normalized in LOOPBACK:
            return True
    return False

