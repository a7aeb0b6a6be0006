# Core - Audit Logging
#
# Append-only structured audit trail for vault and backup events.
# Every unlock attempt, wipe, import and backup run is recorded with a
# timestamp and host context so a user can reconstruct what touched the
# vault. Secret material (passwords, keys, OTP seeds) is never logged.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of events written to the audit log."""

    # Vault lifecycle
    VAULT_CREATED = "vault.created"
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_UNLOCK_FAILED = "vault.unlock.failed"
    VAULT_LOCKED = "vault.locked"
    VAULT_WIPED = "vault.wiped"
    VAULT_ERROR = "vault.error"

    # Recovery
    SECURITY_QUESTION_SET = "vault.question.set"
    SECURITY_ANSWER_FAILED = "vault.question.failed"

    # Import / export
    DATA_EXPORTED = "data.exported"
    DATA_IMPORTED = "data.imported"

    # Backup pipeline
    BACKUP_CREATED = "backup.created"
    BACKUP_RESTORED = "backup.restored"
    BACKUP_DELETED = "backup.deleted"
    BACKUP_FAILED = "backup.failed"


class EventSeverity(str, Enum):
    """Severity levels for audit events."""

    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only JSON audit logger built on structlog.

    One file per day (``audit_YYYY-MM-DD.log``) under ``log_dir``.
    Each record carries an event id, type, severity, message, details
    and a small host context block.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Args:
            log_dir: Directory for audit logs (default: settings.audit_log_dir)
        """
        if log_dir is None:
            from .settings import get_settings
            log_dir = get_settings().audit_log_dir

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._handler = self._setup_file_handler()
        self.logger = structlog.get_logger("monica_vault.audit")

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))

        audit_logger = logging.getLogger("monica_vault.audit")
        audit_logger.addHandler(handler)
        audit_logger.setLevel(logging.INFO)
        return handler

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("monica_vault.audit").removeHandler(self._handler)
        self._handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Record an audit event.

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable description
            details: Additional non-secret details

        Returns:
            str: Event ID (UUID)
        """
        event_id = str(uuid4())
        self.logger.info(
            "audit_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details or {},
            context=self._host_context(),
        )
        return event_id

    def log_vault_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> str:
        """Record a vault lifecycle event (never pass secrets in details)."""
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=f"Vault: {message}",
            details=details,
        )

    @staticmethod
    def _host_context() -> Dict[str, Any]:
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs,
) -> str:
    """
    Convenience wrapper around the global audit logger.

    Usage:
        log_security_event(
            EventType.BACKUP_CREATED,
            EventSeverity.INFO,
            "Backup uploaded",
            details={"remote_name": name},
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
