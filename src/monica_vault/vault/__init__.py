# Vault Module - Master Password, Session Key, Entry Store
#
# - VaultKeyManager: PBKDF2 master password + security question
# - VaultSession: reader-counted session key handle
# - EnvelopeCipher: per-field AES-256-GCM
# - EntryStore: SQLite entity store

from .encryption import DecryptResult, DecryptStatus, EnvelopeCipher, looks_encrypted
from .key_manager import VaultKeyManager
from .models import (
    BankCardData,
    Category,
    DocumentData,
    EntryKind,
    NoteData,
    TotpData,
    VaultEntry,
)
from .session import VaultSession
from .store import EntryStore

__all__ = [
    "BankCardData",
    "Category",
    "DecryptResult",
    "DecryptStatus",
    "DocumentData",
    "EntryKind",
    "EntryStore",
    "EnvelopeCipher",
    "NoteData",
    "TotpData",
    "VaultEntry",
    "VaultKeyManager",
    "VaultSession",
    "looks_encrypted",
]
