"""
DeviceGate HTTP service.

Run with ``uvicorn devicegate.main:create_app --factory``.
"""

import math
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import (
    LOG_JSON,
    LOG_LEVEL,
    Settings,
    load_admin_allowlist,
    require_valid_config,
    validate_config,
)
from .credentials import CredentialManager
from .db import Database
from .entitlement import EntitlementCache
from .errors import DeviceGateError, ErrorKind
from .gateway import AccessGateway, GatewayContext
from .heartbeat import HeartbeatService
from .identity import IdentityBuilder
from .keys import get_signer
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    AdminRefreshRequest,
    EntitlementCheckRequest,
    FingerprintRequest,
    HeartbeatRequest,
    ScriptDefinition,
    WalletRequest,
)
from .oracle import OwnershipOracle, get_oracle
from .rate_limit import RateLimiter
from .scripts import ScriptCatalog
from .security import (
    ValidationError,
    normalize_address,
    validate_device_identity,
    validate_script_id,
    validate_subject_address,
)
from .util import MonotonicClock, utc_rfc3339


class Services:
    """Every collaborator the routes need, constructed once per app."""

    def __init__(self, settings: Settings, oracle: Optional[OwnershipOracle] = None, clock=None):
        self.settings = settings
        self.clock = clock or MonotonicClock()
        self.db = Database(settings.db_path)
        self.identity = IdentityBuilder(settings.identity_pepper, settings.identity_pepper_secondary)
        self.credentials = CredentialManager(get_signer(settings), self.clock, settings.session_ttl_seconds)
        self.heartbeat = HeartbeatService(
            self.clock,
            timeout_seconds=settings.heartbeat_timeout_seconds,
            interval_seconds=settings.heartbeat_interval_seconds,
        )
        self.oracle = oracle or get_oracle(settings)
        self.entitlements = EntitlementCache(
            self.db,
            self.oracle,
            self.clock,
            freshness_seconds=settings.entitlement_freshness_seconds,
            negative_recheck_seconds=settings.entitlement_negative_recheck_seconds,
            resolve_address=self.wallet_of,
        )
        self.catalog = ScriptCatalog(self.db, self.entitlements, self.clock)
        self.gateway = AccessGateway(
            self.credentials,
            allowlist_source=lambda: load_admin_allowlist(settings),
            liveness_check=self.heartbeat.ensure_active,
            trusted_proxies=settings.trusted_proxies,
        )
        self.fingerprint_limiter = RateLimiter(settings.fingerprint_rpm)
        self.heartbeat.add_termination_listener(
            lambda monitor, reason: self.entitlements.forget_subject(monitor.subject_id)
        )

    def wallet_of(self, subject_id: str) -> Optional[str]:
        device = self.db.get_device(subject_id)
        return device.get("wallet_address") if device else None


def create_app(settings: Optional[Settings] = None,
               oracle: Optional[OwnershipOracle] = None,
               clock=None) -> FastAPI:
    settings = settings or Settings.from_env()
    if settings.env == "prod":
        require_valid_config(settings)

    services = Services(settings, oracle=oracle, clock=clock)
    app = FastAPI(title="DeviceGate")
    app.state.services = services

    def ok(data: Any) -> Dict[str, Any]:
        return {"success": True, "data": data, "timestamp": utc_rfc3339(services.clock.now())}

    def fail(error: DeviceGateError) -> JSONResponse:
        headers = {}
        if error.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
        return JSONResponse(
            status_code=error.status_code,
            content={"success": False, "error": error.to_dict(),
                     "timestamp": utc_rfc3339(services.clock.now())},
            headers=headers,
        )

    def context(request: Request) -> GatewayContext:
        return request.state.gateway

    def admin_context(request: Request) -> GatewayContext:
        ctx = context(request)
        if not ctx.admin:
            # Path not covered by any allow-list entry.
            audit_log.admin_access_denied(ctx.client_address, request.url.path)
            raise DeviceGateError(ErrorKind.ADMIN_ACCESS_DENIED, "address not allowed for this path")
        return ctx

    def evidence_keys(requested: Optional[str]) -> List[str]:
        keys = [requested] if requested else list(settings.default_evidence_keys)
        if not keys:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, "evidence_key is required")
        try:
            return [validate_subject_address(k) for k in keys]
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, f"evidence_key: {e.message}") from e

    @app.middleware("http")
    async def gateway_middleware(request: Request, call_next):
        set_request_id(request.headers.get("x-request-id"))
        peer = request.client.host if request.client else None
        try:
            request.state.gateway = services.gateway.authorize(request.url.path, request.headers, peer)
        except DeviceGateError as e:
            return fail(e)
        return await call_next(request)

    @app.exception_handler(DeviceGateError)
    async def _device_gate_error(request: Request, exc: DeviceGateError):
        return fail(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return fail(DeviceGateError(ErrorKind.VALIDATION_FAILED, f"{where}: {first.get('msg', 'invalid')}"))

    @app.on_event("startup")
    def _startup():
        if settings.env != "test":
            configure_logging(LOG_LEVEL, json_format=LOG_JSON)
        services.heartbeat.start()

    @app.on_event("shutdown")
    def _shutdown():
        services.heartbeat.stop()
        services.db.close()

    # ============================================================
    # Open
    # ============================================================

    @app.get("/api/health")
    def health():
        return ok({"status": "ok"})

    @app.get("/api/status")
    def status():
        return ok({
            "env": settings.env,
            "active_sessions": services.heartbeat.registry.active_count(),
            "heartbeat_interval": settings.heartbeat_interval_seconds,
            "heartbeat_timeout": settings.heartbeat_timeout_seconds,
            "session_ttl": settings.session_ttl_seconds,
            "oracle_network": services.oracle.network_name,
            "config": validate_config(settings),
        })

    @app.post("/api/auth/fingerprint")
    def fingerprint(req: FingerprintRequest, request: Request):
        ctx = context(request)
        limit = services.fingerprint_limiter.check(ctx.client_address)
        if not limit.allowed:
            audit_log.rate_limit_exceeded(ctx.client_address, "/api/auth/fingerprint")
            raise DeviceGateError(ErrorKind.RATE_LIMITED, "too many fingerprint submissions",
                                  retry_after=limit.retry_after)

        wallet = None
        if req.wallet_address:
            try:
                wallet = validate_subject_address(req.wallet_address)
            except ValidationError as e:
                raise DeviceGateError(ErrorKind.VALIDATION_FAILED, f"{e.field}: {e.message}") from e

        address = normalize_address(req.client_address) if req.client_address else ctx.client_address
        device_identity = services.identity.derive_identity(req.characteristics, address)
        if req.device_identity and req.device_identity != device_identity:
            audit_log.security_event("identity_changed", "low",
                                     previous=req.device_identity[:8], current=device_identity[:8])

        is_new = services.db.upsert_device(device_identity, address, services.clock.now())
        if wallet:
            services.db.set_wallet(device_identity, wallet)
        audit_log.identity_derived(device_identity, is_new, address)

        credential = services.credentials.issue(device_identity)
        services.heartbeat.open_session(credential.session_id, device_identity)
        audit_log.credential_issued(device_identity, credential.session_id, credential.expires_at)

        data = credential.to_dict()
        data.update({
            "is_new_identity": is_new,
            "heartbeat_interval": settings.heartbeat_interval_seconds,
            "heartbeat_timeout": settings.heartbeat_timeout_seconds,
        })
        return ok(data)

    # ============================================================
    # Identity-only
    # ============================================================

    @app.post("/api/auth/verify")
    def verify_identity(request: Request):
        ctx = context(request)
        device = services.db.get_device(ctx.device_identity)
        return ok({
            "device_identity": ctx.device_identity,
            "known": device is not None,
            "wallet_bound": bool(device and device.get("wallet_address")),
        })

    # ============================================================
    # Session-required
    # ============================================================

    @app.get("/api/heartbeat/next")
    def heartbeat_next(request: Request):
        ctx = context(request)
        return ok(services.heartbeat.next_trigger(ctx.session_id, ctx.device_identity).to_dict())

    @app.post("/api/heartbeat")
    def heartbeat(req: HeartbeatRequest, request: Request):
        ctx = context(request)
        if req.subject_id != ctx.device_identity:
            raise DeviceGateError(ErrorKind.IDENTITY_MISMATCH, "heartbeat subject does not match identity")
        ack = services.heartbeat.receive(ctx.session_id, req.subject_id, req.sequence)
        return ok(ack.to_dict())

    @app.post("/api/entitlements/check")
    def entitlements_check(req: EntitlementCheckRequest, request: Request):
        ctx = context(request)
        records = services.entitlements.check_all(
            ctx.device_identity, evidence_keys(req.evidence_key), force_refresh=req.force_refresh)
        # The check may outlive the session; its result is cached but not handed out.
        services.heartbeat.ensure_active(ctx.session_id)
        if req.evidence_key:
            return ok(records[0].to_dict())
        return ok({"records": [r.to_dict() for r in records]})

    @app.get("/api/scripts/available")
    def scripts_available(request: Request):
        ctx = context(request)
        scripts = services.catalog.available_for(ctx.device_identity)
        services.heartbeat.ensure_active(ctx.session_id)
        return ok(scripts)

    @app.get("/api/scripts/{script_id}")
    def script_detail(script_id: str, request: Request):
        ctx = context(request)
        try:
            validate_script_id(script_id)
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, e.message) from e
        script = services.catalog.get_for(ctx.device_identity, script_id)
        services.heartbeat.ensure_active(ctx.session_id)
        return ok(script)

    @app.post("/api/wallet")
    def bind_wallet(req: WalletRequest, request: Request):
        ctx = context(request)
        try:
            wallet = validate_subject_address(req.wallet_address)
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, f"{e.field}: {e.message}") from e
        previous = services.wallet_of(ctx.device_identity)
        services.db.set_wallet(ctx.device_identity, wallet)
        if previous != wallet:
            services.entitlements.forget_subject(ctx.device_identity)
        return ok({"device_identity": ctx.device_identity, "wallet_address": wallet})

    # ============================================================
    # Admin (allow-listed)
    # ============================================================

    @app.post("/api/admin/refresh-entitlement")
    def admin_refresh(req: AdminRefreshRequest, request: Request):
        admin_context(request)
        device_identity = validate_device_identity(req.device_identity)
        keys = req.evidence_keys or list(settings.default_evidence_keys)
        if not keys:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, "evidence_keys is required")
        try:
            keys = [validate_subject_address(k) for k in keys]
        except ValidationError as e:
            raise DeviceGateError(ErrorKind.VALIDATION_FAILED, f"evidence_keys: {e.message}") from e
        records = services.entitlements.check_all(device_identity, keys, force_refresh=True)
        return ok({"device_identity": device_identity, "records": [r.to_dict() for r in records]})

    @app.post("/api/admin/scripts")
    def admin_add_script(req: ScriptDefinition, request: Request):
        admin_context(request)
        return ok(services.catalog.add(req))

    @app.get("/api/admin/stats")
    def admin_stats(request: Request):
        admin_context(request)
        stats = services.db.get_stats()
        stats["active_sessions"] = services.heartbeat.registry.active_count()
        return ok(stats)

    return app
