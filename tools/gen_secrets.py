import os, json, sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devicegate.config import SECRETS_PATH
from devicegate.keys import generate_ed25519_keypair
from devicegate.util import generate_secret

path = sys.argv[1] if len(sys.argv) > 1 else SECRETS_PATH
os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

private_b64, public_b64 = generate_ed25519_keypair()
secrets_doc = {
    "identity_pepper": generate_secret(),
    "identity_pepper_secondary": generate_secret(),
    "session_secret": generate_secret(),
    "ed25519_private_key_b64": private_b64,
    "ed25519_public_key_b64": public_b64,
}

with open(path, "w", encoding="utf-8") as f:
    json.dump(secrets_doc, f, indent=2)

print(f"Generated DeviceGate secrets in {path}.")
