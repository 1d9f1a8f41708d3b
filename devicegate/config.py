"""
Configuration module for DeviceGate.

Centralizes all configuration with environment variable support,
validation, and caching for file-backed settings.
"""

import os
import json
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Any, List, Optional
from pathlib import Path

from .util import generate_secret

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("DEVICEGATE_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("DEVICEGATE_DB_PATH", "data/devicegate.db")
SECRETS_PATH = os.getenv("DEVICEGATE_SECRETS_PATH", "secrets/devicegate_secrets.json")

# Credential signing
CREDENTIAL_SIGNER = os.getenv("CREDENTIAL_SIGNER", "hmac")  # hmac|ed25519

# Timing contracts (seconds)
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "86400"))
HEARTBEAT_TIMEOUT_SECONDS = int(os.getenv("HEARTBEAT_TIMEOUT_SECONDS", "40"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))
ENTITLEMENT_FRESHNESS_SECONDS = int(os.getenv("ENTITLEMENT_FRESHNESS_SECONDS", "86400"))
ENTITLEMENT_NEGATIVE_RECHECK_SECONDS = int(os.getenv("ENTITLEMENT_NEGATIVE_RECHECK_SECONDS", "0"))

# Ownership oracle
ORACLE_BACKEND = os.getenv("ORACLE_BACKEND", "static")  # static|jsonrpc
ORACLE_RPC_URL = os.getenv("ORACLE_RPC_URL", "")
ORACLE_NETWORK_NAME = os.getenv("ORACLE_NETWORK_NAME", "Sepolia Testnet")
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "5"))
ORACLE_RATE_PER_SECOND = float(os.getenv("ORACLE_RATE_PER_SECOND", "5"))
ORACLE_BURST = int(os.getenv("ORACLE_BURST", "10"))

# Admin allow-list
ADMIN_PATH_PREFIX = os.getenv("ADMIN_PATH_PREFIX", "/api/admin")
ADMIN_ALLOWLIST = os.getenv("ADMIN_ALLOWLIST", "127.0.0.1,::1,localhost")
ADMIN_ALLOWLIST_PATH = os.getenv("ADMIN_ALLOWLIST_PATH", "")

# Reverse proxies whose X-Forwarded-For / X-Real-IP headers are believed
TRUSTED_PROXIES = os.getenv("TRUSTED_PROXIES", "")

# Rate limits (requests per minute)
FINGERPRINT_RPM = int(os.getenv("FINGERPRINT_RPM", "60"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.monotonic() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.monotonic()
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        """Invalidate cache for a specific path or all paths."""
        with self._lock:
            if path:
                self._cache.pop(path, None)
                self._timestamps.pop(path, None)
            else:
                self._cache.clear()
                self._timestamps.clear()


# Global cached config instance
_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


def invalidate_config_cache() -> None:
    """Invalidate all cached configuration."""
    _config_cache.invalidate()


def load_secrets(path: str = SECRETS_PATH) -> Dict[str, Any]:
    """Load the secrets file written by tools/gen_secrets.py, if present."""
    if not Path(path).exists():
        return {}
    return load_json_cached(path)


def parse_address_list(raw: str) -> List[str]:
    return [a.strip() for a in raw.split(",") if a.strip()]


def load_admin_allowlist(settings: "Settings") -> Dict[str, List[str]]:
    """
    Resolve the path-prefix -> allowed-address mapping.

    The JSON file, when configured, is re-read on the cache TTL so the
    allow-list can be edited without a restart.
    """
    if settings.admin_allowlist_path and Path(settings.admin_allowlist_path).exists():
        data = load_json_cached(settings.admin_allowlist_path)
        return {prefix: list(addrs) for prefix, addrs in data.get("prefixes", {}).items()}
    return {settings.admin_path_prefix: list(settings.admin_allowlist)}


# ============================================================
# Settings
# ============================================================

@dataclass(frozen=True)
class Settings:
    """Resolved settings handed to the service constructors."""
    env: str = "dev"
    db_path: str = DB_PATH
    identity_pepper: str = ""
    identity_pepper_secondary: str = ""
    session_secret: str = ""
    credential_signer: str = "hmac"
    ed25519_private_key_b64: str = ""
    ed25519_public_key_b64: str = ""
    session_ttl_seconds: int = 86400
    heartbeat_timeout_seconds: int = 40
    heartbeat_interval_seconds: int = 30
    entitlement_freshness_seconds: int = 86400
    entitlement_negative_recheck_seconds: int = 0
    oracle_backend: str = "static"
    oracle_rpc_url: str = ""
    oracle_network_name: str = "Sepolia Testnet"
    oracle_timeout_seconds: float = 5.0
    oracle_rate_per_second: float = 5.0
    oracle_burst: int = 10
    admin_path_prefix: str = "/api/admin"
    admin_allowlist: tuple = ("127.0.0.1", "::1", "localhost")
    admin_allowlist_path: str = ""
    trusted_proxies: tuple = ()
    fingerprint_rpm: int = 60
    default_evidence_keys: tuple = field(default_factory=tuple)

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the environment and the optional secrets file.

        Environment variables win over the secrets file. In dev, missing
        secrets are replaced by per-process random values; credentials then
        do not survive a restart.
        """
        secrets_file = load_secrets()
        pepper = os.getenv("IDENTITY_PEPPER") or secrets_file.get("identity_pepper", "")
        session_secret = os.getenv("SESSION_SECRET") or secrets_file.get("session_secret", "")

        if ENV != "prod":
            pepper = pepper or generate_secret()
            session_secret = session_secret or generate_secret()

        secondary = (os.getenv("IDENTITY_PEPPER_SECONDARY")
                     or secrets_file.get("identity_pepper_secondary", "")
                     or pepper)

        return cls(
            env=ENV,
            db_path=DB_PATH,
            identity_pepper=pepper,
            identity_pepper_secondary=secondary,
            session_secret=session_secret,
            credential_signer=CREDENTIAL_SIGNER,
            ed25519_private_key_b64=secrets_file.get("ed25519_private_key_b64", ""),
            ed25519_public_key_b64=secrets_file.get("ed25519_public_key_b64", ""),
            session_ttl_seconds=SESSION_TTL_SECONDS,
            heartbeat_timeout_seconds=HEARTBEAT_TIMEOUT_SECONDS,
            heartbeat_interval_seconds=HEARTBEAT_INTERVAL_SECONDS,
            entitlement_freshness_seconds=ENTITLEMENT_FRESHNESS_SECONDS,
            entitlement_negative_recheck_seconds=ENTITLEMENT_NEGATIVE_RECHECK_SECONDS,
            oracle_backend=ORACLE_BACKEND,
            oracle_rpc_url=ORACLE_RPC_URL,
            oracle_network_name=ORACLE_NETWORK_NAME,
            oracle_timeout_seconds=ORACLE_TIMEOUT_SECONDS,
            oracle_rate_per_second=ORACLE_RATE_PER_SECOND,
            oracle_burst=ORACLE_BURST,
            admin_path_prefix=ADMIN_PATH_PREFIX,
            admin_allowlist=tuple(parse_address_list(ADMIN_ALLOWLIST)),
            admin_allowlist_path=ADMIN_ALLOWLIST_PATH,
            trusted_proxies=tuple(parse_address_list(TRUSTED_PROXIES)),
            fingerprint_rpm=FINGERPRINT_RPM,
            default_evidence_keys=tuple(parse_address_list(os.getenv("DEFAULT_EVIDENCE_KEYS", ""))),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Settings) -> Dict[str, bool]:
    """
    Report which required settings are present.
    Returns dict of name -> present.
    """
    checks = {
        "identity_pepper": bool(settings.identity_pepper),
        "session_secret": bool(settings.session_secret),
        "heartbeat_interval_below_timeout":
            settings.heartbeat_interval_seconds < settings.heartbeat_timeout_seconds,
    }
    if settings.credential_signer == "ed25519":
        checks["ed25519_private_key"] = bool(settings.ed25519_private_key_b64)
    if settings.oracle_backend == "jsonrpc":
        checks["oracle_rpc_url"] = bool(settings.oracle_rpc_url)
    return checks


def require_valid_config(settings: Settings) -> None:
    """Raise if any check from validate_config fails."""
    missing = [name for name, ok in validate_config(settings).items() if not ok]
    if missing:
        raise RuntimeError(f"Invalid DeviceGate configuration: {', '.join(missing)}")
