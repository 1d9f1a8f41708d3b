import os, sys

import pytest
from fastapi.testclient import TestClient

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devicegate.config import Settings
from devicegate.main import create_app
from devicegate.oracle import StaticOwnershipOracle
from devicegate.util import ManualClock

# TestClient connects as "testclient", which the test settings trust as a proxy.
TEST_PEER = "testclient"
ADMIN_HEADERS = {"X-Forwarded-For": "127.0.0.1"}
WALLET = "0x" + "ab" * 20
CONTRACT = "0x" + "cd" * 20

CHARACTERISTICS = {
    "cpu": {"model": "Intel(R) Core(TM) i7-9750H", "architecture": "x86_64", "cores": 12},
    "gpu": {"vendor": "NVIDIA", "renderer": "GeForce GTX 1660 Ti", "memory": 6144},
    "os": {"platform": "win32", "architecture": "x64", "version": "10.0.19045"},
    "webgl": "WebGL 2.0",
}


def make_settings(tmp_path, **overrides) -> Settings:
    settings = Settings(
        env="test",
        db_path=str(tmp_path / "devicegate.db"),
        identity_pepper="test-pepper-a",
        identity_pepper_secondary="test-pepper-b",
        session_secret="test-session-secret",
        fingerprint_rpm=1000,
        admin_allowlist=("127.0.0.1", "::1", "localhost"),
        trusted_proxies=(TEST_PEER,),
    )
    return settings.with_overrides(**overrides) if overrides else settings


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def oracle():
    return StaticOwnershipOracle()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def app(settings, oracle, clock):
    application = create_app(settings, oracle=oracle, clock=clock)
    yield application
    application.state.services.db.close()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def login(client):
    """Authenticate a device; returns (data, session headers)."""
    def _login(characteristics=None, address="203.0.113.7", **extra):
        body = {"characteristics": characteristics or CHARACTERISTICS}
        body.update(extra)
        r = client.post("/api/auth/fingerprint", json=body, headers={"X-Forwarded-For": address})
        assert r.status_code == 200, r.text
        data = r.json()["data"]
        headers = {
            "X-Device-Identity": data["device_identity"],
            "X-Session-Credential": data["session_credential"],
        }
        return data, headers
    return _login
