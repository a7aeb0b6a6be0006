# Core Module - Shared Utilities
#
# - Audit logging (structlog)
# - Settings / filesystem layout

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
)
from .settings import Settings, get_settings, set_settings

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_security_event",
    # Settings
    "Settings",
    "get_settings",
    "set_settings",
]
