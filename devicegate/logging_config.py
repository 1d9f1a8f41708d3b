"""
Logging configuration for DeviceGate.

Provides structured JSON logging for the security audit trail and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from .util import mask_sensitive, short_id

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for security audit events.

    One method per event in the device authentication lifecycle:
    identity derivation, credential issuance and rejection, heartbeat
    acceptance and session termination, entitlement decisions and
    admin access.
    """

    def __init__(self, name: str = "devicegate.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def identity_derived(self, device_identity: str, is_new: bool, client_address: str) -> None:
        self._log(
            logging.INFO,
            "IDENTITY_DERIVED",
            device=short_id(device_identity),
            is_new=is_new,
            client_address=client_address,
            message="New device registered" if is_new else "Returning device verified"
        )

    def credential_issued(self, device_identity: str, session_id: str, expires_at: float) -> None:
        self._log(
            logging.INFO,
            "CREDENTIAL_ISSUED",
            device=short_id(device_identity),
            session=short_id(session_id),
            expires_at=int(expires_at),
            message=f"Session credential issued for {short_id(device_identity)}"
        )

    def credential_rejected(self, kind: str, path: str, device_identity: Optional[str] = None) -> None:
        self._log(
            logging.WARNING,
            "CREDENTIAL_REJECTED",
            kind=kind,
            path=path,
            device=short_id(device_identity) if device_identity else None,
            message=f"Request rejected: {kind}"
        )

    def heartbeat_accepted(self, session_id: str, sequence: int) -> None:
        self._log(
            logging.DEBUG,
            "HEARTBEAT_ACCEPTED",
            session=short_id(session_id),
            sequence=sequence,
            message=f"Heartbeat {sequence} accepted"
        )

    def sequence_violation(self, session_id: str, expected: int, received: int) -> None:
        self._log(
            logging.ERROR,
            "SEQUENCE_VIOLATION",
            session=short_id(session_id),
            expected=expected,
            received=received,
            message=f"Heartbeat sequence violation: expected {expected}, received {received}"
        )

    def session_terminated(self, session_id: str, subject_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "SESSION_TERMINATED",
            session=short_id(session_id),
            subject=short_id(subject_id),
            reason=reason,
            message=f"Session terminated: {reason}"
        )

    def entitlement_decision(
        self,
        subject_id: str,
        evidence_key: str,
        holds: bool,
        source: str,
        quantity: int = 0
    ) -> None:
        self._log(
            logging.INFO,
            "ENTITLEMENT_DECISION",
            subject=short_id(subject_id),
            evidence_key=short_id(evidence_key, 10),
            holds=holds,
            quantity=quantity,
            source=source,
            message=f"Entitlement {'held' if holds else 'not held'} ({source})"
        )

    def oracle_unavailable(self, evidence_key: str, reason: str) -> None:
        self._log(
            logging.ERROR,
            "ORACLE_UNAVAILABLE",
            evidence_key=short_id(evidence_key, 10),
            reason=reason,
            message=f"Ownership oracle unavailable: {reason}"
        )

    def admin_access_denied(self, client_address: str, path: str) -> None:
        self._log(
            logging.WARNING,
            "ADMIN_ACCESS_DENIED",
            client_address=client_address,
            path=path,
            message=f"Admin access denied for {client_address}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=mask_sensitive(client_id),
            endpoint=endpoint,
            message=f"Rate limit exceeded on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
