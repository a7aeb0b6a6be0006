"""
Monica Vault Exception Classes
"""


class VaultError(Exception):
    """Base exception for vault, codec and backup operations"""
    pass


class LockedVaultError(VaultError):
    """Raised when a crypto operation runs without a session key"""
    pass


class StructuralError(VaultError):
    """Raised for bad magic, truncated files, malformed JSON/CSV"""
    pass


class AuthError(VaultError):
    """Raised when a password-gated decrypt fails authentication"""
    pass


class PasswordRequiredError(AuthError):
    """Raised when encrypted input arrives without a password"""
    pass


class TransportError(VaultError):
    """Raised when a WebDAV request fails (network or HTTP status)"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class PartialImportFailure(VaultError):
    """Raised for a single record that cannot be imported.

    Import loops catch this per record, count it and continue.
    """

    def __init__(self, title: str, reason: str):
        super().__init__(f"Failed to import '{title}': {reason}")
        self.title = title
        self.reason = reason
