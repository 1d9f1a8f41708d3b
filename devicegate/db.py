"""
Database module for DeviceGate.

SQLite storage for device identities, cached entitlement records and the
script catalog. Each ``Database`` owns its own thread-local connections,
so tests can run against isolated files.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

DEFAULT_DB_PATH = "data/devicegate.db"


class Database:
    """Thread-safe SQLite access; one connection per thread."""

    def __init__(self, path: str = DEFAULT_DB_PATH):
        self.path = Path(path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self.init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on failure."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_schema(self) -> None:
        """Create tables and indexes. Safe to call repeatedly."""
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS devices (
                device_identity TEXT PRIMARY KEY,
                client_address TEXT,
                wallet_address TEXT,
                created_at REAL NOT NULL,
                last_active REAL NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS entitlements (
                subject_id TEXT NOT NULL,
                evidence_key TEXT NOT NULL,
                holds INTEGER NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 0,
                network_name TEXT,
                checked_at REAL NOT NULL,
                PRIMARY KEY (subject_id, evidence_key)
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entitlements_checked
            ON entitlements(checked_at);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS scripts (
                script_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                version TEXT NOT NULL DEFAULT '1.0.0',
                category TEXT NOT NULL DEFAULT 'automation',
                required_evidence_keys TEXT NOT NULL DEFAULT '[]',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL
            );""")

    # ============================================================
    # Devices
    # ============================================================

    def upsert_device(self, device_identity: str, client_address: str, now: float) -> bool:
        """
        Record an authentication for ``device_identity``.

        Returns True if the identity was not seen before.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO devices(device_identity, client_address, created_at, last_active) "
                "VALUES(?,?,?,?)",
                (device_identity, client_address, now, now)
            )
            if cur.rowcount == 1:
                return True
            conn.execute(
                "UPDATE devices SET client_address=?, last_active=? WHERE device_identity=?",
                (client_address, now, device_identity)
            )
            return False

    def get_device(self, device_identity: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM devices WHERE device_identity=?", (device_identity,))
        row = cur.fetchone()
        return dict(row) if row else None

    def set_wallet(self, device_identity: str, wallet_address: Optional[str]) -> bool:
        """Bind a wallet address to a known device. Returns False if unknown."""
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE devices SET wallet_address=? WHERE device_identity=?",
                (wallet_address, device_identity)
            )
            return cur.rowcount == 1

    # ============================================================
    # Entitlements
    # ============================================================

    def get_entitlement(self, subject_id: str, evidence_key: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT * FROM entitlements WHERE subject_id=? AND evidence_key=?",
            (subject_id, evidence_key)
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def upsert_entitlement(
        self,
        subject_id: str,
        evidence_key: str,
        holds: bool,
        quantity: int,
        network_name: Optional[str],
        checked_at: float
    ) -> None:
        """Insert or overwrite the single row for (subject_id, evidence_key)."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO entitlements(subject_id, evidence_key, holds, quantity, network_name, checked_at) "
                "VALUES(?,?,?,?,?,?) "
                "ON CONFLICT(subject_id, evidence_key) DO UPDATE SET "
                "holds=excluded.holds, quantity=excluded.quantity, "
                "network_name=excluded.network_name, checked_at=excluded.checked_at",
                (subject_id, evidence_key, 1 if holds else 0, quantity, network_name, checked_at)
            )

    def delete_entitlements(self, subject_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM entitlements WHERE subject_id=?", (subject_id,))
            return cur.rowcount

    # ============================================================
    # Scripts
    # ============================================================

    def add_script(
        self,
        script_id: str,
        name: str,
        description: str,
        version: str,
        category: str,
        required_evidence_keys: List[str],
        metadata: Dict[str, Any],
        created_at: float
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO scripts(script_id, name, description, version, category, "
                "required_evidence_keys, metadata, created_at) VALUES(?,?,?,?,?,?,?,?)",
                (script_id, name, description, version, category,
                 json.dumps(required_evidence_keys), json.dumps(metadata), created_at)
            )

    def get_script(self, script_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM scripts WHERE script_id=?", (script_id,))
        row = cur.fetchone()
        return self._script_row(row) if row else None

    def list_scripts(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM scripts ORDER BY script_id")
        return [self._script_row(row) for row in cur.fetchall()]

    @staticmethod
    def _script_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["required_evidence_keys"] = json.loads(data["required_evidence_keys"])
        data["metadata"] = json.loads(data["metadata"])
        return data

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_stats(self) -> Dict[str, int]:
        conn = self._get_connection()
        stats = {}
        for table in ["devices", "entitlements", "scripts"]:
            cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()["cnt"]
        cur = conn.execute("SELECT COUNT(*) AS cnt FROM entitlements WHERE holds=1")
        stats["positive_entitlements_count"] = cur.fetchone()["cnt"]
        return stats

    def close(self) -> None:
        """Close every connection opened by this instance."""
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
