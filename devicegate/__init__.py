"""
DeviceGate

Device authentication and session liveness for desktop automation clients.

A device proves who it is with a hash-chain identity derived from its
hardware characteristics, receives a signed session credential, and keeps
that session alive by acknowledging server-driven heartbeats in strict
sequence. Protected requests pass an access gateway; gated scripts are
unlocked by a cached, periodically revalidated ownership check.

Usage:
    from devicegate.main import create_app
    app = create_app()

    # or from a client
    from devicegate.client import DeviceClient
    client = DeviceClient("http://127.0.0.1:8000")
    session = client.authenticate()
    client.heartbeat_once()
"""

__version__ = "1.0.0"
