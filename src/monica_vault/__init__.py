# Monica Vault - Main Package
#
# Local password / OTP / card / note vault with encrypted interchange:
# Aegis JSON, CSV and WebDAV backups shared with the Monica mobile client.

__version__ = "0.1.0"
__author__ = "Monica Vault Team"
__description__ = "Local password vault with Aegis, CSV and WebDAV backup interchange"

from .core import EventSeverity, EventType, get_audit_logger, get_settings
from .errors import (
    AuthError,
    LockedVaultError,
    PasswordRequiredError,
    StructuralError,
    TransportError,
    VaultError,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "get_settings",
    "VaultError",
    "LockedVaultError",
    "StructuralError",
    "AuthError",
    "PasswordRequiredError",
    "TransportError",
]
