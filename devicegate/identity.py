"""
Hash-chain device identity.

The identity is built in three one-way stages, each wrapped in a pepper:

    stage_a  = H(pepper_a ∥ cpu.model ∥ gpu.renderer ∥ os.architecture ∥ webgl ∥ pepper_a)
    stage_b  = H(pepper_b ∥ cpu.architecture ∥ gpu.memory ∥ os.platform ∥ pepper_b)
    identity = H(pepper_a ∥ stage_a ∥ stage_b ∥ client_address ∥ pepper_a)

H is SHA-256 and fields are joined with ``:``. Raw characteristics never
leave this module; only the final digest is returned to callers.
Missing or empty fields hash as the literal ``unknown`` so derivation
never fails.
"""

from dataclasses import dataclass
from typing import Any, Iterable

from .models import DeviceCharacteristics
from .util import sha256_hex

UNKNOWN = "unknown"


@dataclass(frozen=True)
class IdentityChain:
    """Intermediate digests of one derivation."""
    stage_a: str
    stage_b: str
    identity: str


def _field(value: Any) -> str:
    if value is None:
        return UNKNOWN
    text = str(value).strip()
    if not text:
        return UNKNOWN
    # Escape the separator so distinct field splits cannot collide.
    return text.replace("\\", "\\\\").replace(":", "\\:")


def _peppered_digest(pepper: str, parts: Iterable[str]) -> str:
    return sha256_hex(pepper + ":".join(parts) + pepper)


class IdentityBuilder:
    """Derives device identities with the configured peppers."""

    def __init__(self, pepper: str, secondary_pepper: str = ""):
        if not pepper:
            raise ValueError("identity pepper must be configured")
        self._pepper_a = pepper
        self._pepper_b = secondary_pepper or pepper

    def primary_digest(self, ch: DeviceCharacteristics) -> str:
        return _peppered_digest(self._pepper_a, [
            _field(ch.cpu.model),
            _field(ch.gpu.renderer),
            _field(ch.os.architecture),
            _field(ch.webgl),
        ])

    def secondary_digest(self, ch: DeviceCharacteristics) -> str:
        return _peppered_digest(self._pepper_b, [
            _field(ch.cpu.architecture),
            _field(ch.gpu.memory),
            _field(ch.os.platform),
        ])

    def derive_chain(self, ch: DeviceCharacteristics, client_address: str) -> IdentityChain:
        stage_a = self.primary_digest(ch)
        stage_b = self.secondary_digest(ch)
        identity = _peppered_digest(self._pepper_a, [stage_a, stage_b, _field(client_address)])
        return IdentityChain(stage_a=stage_a, stage_b=stage_b, identity=identity)

    def derive_identity(self, ch: DeviceCharacteristics, client_address: str) -> str:
        """Return the 64-character hex device identity."""
        return self.derive_chain(ch, client_address).identity
