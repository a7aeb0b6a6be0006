# Vault - Session Key Handle
#
# The session key exists only while the vault is unlocked. Instead of a
# mutable attribute that lock() can null out under a running encrypt(),
# callers borrow the key through `with session.key() as key:`. Borrowing
# bumps a reader count; clear() waits for all readers to return before
# zeroing and dropping the key buffer.

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from ..errors import LockedVaultError


class VaultSession:
    """Owner of the in-memory session key.

    One instance per unlocked vault; passed explicitly to every crypto
    call (EnvelopeCipher, ImageStore, BackupCodec).
    """

    def __init__(self, key: Optional[bytes] = None):
        self._cond = threading.Condition()
        self._key: Optional[bytearray] = None
        self._readers = 0
        self._generation = 0
        if key is not None:
            self.open(key)

    @property
    def is_unlocked(self) -> bool:
        with self._cond:
            return self._key is not None

    @property
    def generation(self) -> int:
        """Incremented every time a key is installed or cleared."""
        with self._cond:
            return self._generation

    def open(self, key: bytes) -> None:
        """Install a new session key (replacing any current one)."""
        if not key:
            raise ValueError("Session key must be non-empty")
        with self._cond:
            self._wait_for_readers()
            self._wipe()
            self._key = bytearray(key)
            self._generation += 1

    def clear(self) -> None:
        """Zero and drop the key once no borrower is using it."""
        with self._cond:
            self._wait_for_readers()
            if self._key is not None:
                self._wipe()
                self._generation += 1

    @contextmanager
    def key(self) -> Iterator[bytes]:
        """Borrow an immutable copy of the key.

        Raises:
            LockedVaultError: No key is installed.
        """
        with self._cond:
            if self._key is None:
                raise LockedVaultError("Vault is locked")
            self._readers += 1
            material = bytes(self._key)
        try:
            yield material
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    def _wait_for_readers(self) -> None:
        while self._readers:
            self._cond.wait()

    def _wipe(self) -> None:
        if self._key is not None:
            for i in range(len(self._key)):
                self._key[i] = 0
        self._key = None
