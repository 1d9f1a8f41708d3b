"""
Catalog of distributable automation scripts.

A script lists the evidence keys (asset contracts) that unlock it. Holding
any one of them is enough; a script with no keys is available to every
live session.
"""

from typing import Any, Dict, List, Optional

from .db import Database
from .entitlement import EntitlementCache
from .errors import DeviceGateError, ErrorKind
from .models import ScriptDefinition
from .security import ValidationError, validate_script_id, validate_subject_address


class ScriptCatalog:

    def __init__(self, db: Database, entitlements: EntitlementCache, clock):
        self._db = db
        self._entitlements = entitlements
        self._clock = clock

    def add(self, definition: ScriptDefinition) -> Dict[str, Any]:
        """Create or replace a script (admin)."""
        try:
            script_id = validate_script_id(definition.script_id)
            keys = [validate_subject_address(k) for k in definition.required_evidence_keys]
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, f"{e.field}: {e.message}") from e
        if not definition.name.strip():
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, "name: cannot be empty")

        self._db.add_script(
            script_id=script_id,
            name=definition.name.strip(),
            description=definition.description,
            version=definition.version,
            category=definition.category,
            required_evidence_keys=keys,
            metadata=definition.metadata,
            created_at=self._clock.now(),
        )
        return self._db.get_script(script_id)

    def all(self) -> List[Dict[str, Any]]:
        return self._db.list_scripts()

    def entitling_key(self, subject_id: str, script: Dict[str, Any]) -> Optional[str]:
        """
        The evidence key that unlocks ``script`` for ``subject_id``, "" for an
        ungated script, or None if the subject holds none of its keys.
        """
        keys = script["required_evidence_keys"]
        if not keys:
            return ""
        for key in keys:
            if self._entitlements.check(subject_id, key).holds:
                return key
        return None

    def available_for(self, subject_id: str) -> List[Dict[str, Any]]:
        available = []
        for script in self._db.list_scripts():
            key = self.entitling_key(subject_id, script)
            if key is not None:
                available.append(dict(script, entitled_by=key or None))
        return available

    def get_for(self, subject_id: str, script_id: str) -> Dict[str, Any]:
        """
        Raises:
            DeviceGateError: NotFound for an unknown script,
                EntitlementRequired if the subject is not entitled
        """
        script = self._db.get_script(script_id)
        if script is None:
            raise DeviceGateError(ErrorKind.NOT_FOUND, f"unknown script {script_id}")
        key = self.entitling_key(subject_id, script)
        if key is None:
            raise DeviceGateError(ErrorKind.ENTITLEMENT_REQUIRED, "subject holds none of the required assets")
        return dict(script, entitled_by=key or None)
