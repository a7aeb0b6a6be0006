"""Monica Vault - standalone key derivation."""

from .scrypt import derive_key, scrypt

__all__ = ["derive_key", "scrypt"]
