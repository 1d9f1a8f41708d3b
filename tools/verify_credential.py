"""
Offline credential check.

    python tools/verify_credential.py <token> [secrets.json]

Prints ``VALID <device_identity>`` or ``INVALID: <kind>``; exit status 0 or 1.
"""

import os, sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devicegate.config import CREDENTIAL_SIGNER, SECRETS_PATH, SESSION_TTL_SECONDS, Settings, load_secrets
from devicegate.credentials import CredentialManager
from devicegate.keys import get_signer
from devicegate.util import MonotonicClock


def main(argv):
    if len(argv) < 2:
        print(__doc__.strip(), file=sys.stderr)
        return 2
    token = argv[1]
    secrets_doc = load_secrets(argv[2] if len(argv) > 2 else SECRETS_PATH)
    settings = Settings(
        session_secret=os.getenv("SESSION_SECRET") or secrets_doc.get("session_secret", ""),
        credential_signer=CREDENTIAL_SIGNER,
        ed25519_private_key_b64=secrets_doc.get("ed25519_private_key_b64", ""),
        ed25519_public_key_b64=secrets_doc.get("ed25519_public_key_b64", ""),
    )
    manager = CredentialManager(get_signer(settings), MonotonicClock(), SESSION_TTL_SECONDS)
    result = manager.verify(token)
    if result.valid:
        print(f"VALID {result.device_identity}")
        return 0
    print(f"INVALID: {result.failure.value}")
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
