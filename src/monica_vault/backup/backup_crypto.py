"""Whole-archive encryption for backups in transit.

Independent of the per-field envelope: the key comes from a backup
password chosen at backup time, not from the master password, so an
archive can be restored on another device.

- PBKDF2-SHA256 (100k iterations, shared with the mobile client)
- AES-256-GCM, random 32-byte salt + 12-byte IV per archive

Archive format: "MONICA_ENC_V1" + salt(32) + iv(12) + ciphertext + tag(16)
"""

import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import AuthError, StructuralError

ENCRYPTED_SUFFIX = ".enc.zip"


class BackupArchiveCipher:
    """Encrypt/decrypt backup archives with a user-provided password."""

    MAGIC = b"MONICA_ENC_V1"
    PBKDF2_ITERATIONS = 100_000
    KEY_LENGTH = 32              # 256 bits for AES-256
    SALT_LENGTH = 32
    NONCE_LENGTH = 12            # 96-bit IV for GCM
    TAG_LENGTH = 16

    _HEADER_SIZE = len(MAGIC) + SALT_LENGTH + NONCE_LENGTH
    _MIN_SIZE = _HEADER_SIZE + TAG_LENGTH

    @staticmethod
    def derive_key(password: str, salt: bytes) -> bytes:
        """Derive a 256-bit key from password + salt via PBKDF2-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=BackupArchiveCipher.KEY_LENGTH,
            salt=salt,
            iterations=BackupArchiveCipher.PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def encrypt_bytes(data: bytes, password: str) -> bytes:
        """Encrypt data with AES-256-GCM.

        Returns: MAGIC + salt(32) + iv(12) + ciphertext + tag(16)
        """
        salt = os.urandom(BackupArchiveCipher.SALT_LENGTH)
        iv = os.urandom(BackupArchiveCipher.NONCE_LENGTH)
        key = BackupArchiveCipher.derive_key(password, salt)
        # AESGCM already emits ciphertext followed by the tag.
        sealed = AESGCM(key).encrypt(iv, data, None)
        return BackupArchiveCipher.MAGIC + salt + iv + sealed

    @staticmethod
    def decrypt_bytes(blob: bytes, password: str) -> bytes:
        """Decrypt an encrypted archive blob.

        Raises:
            StructuralError: Too short or the magic header is missing.
            AuthError: Wrong password or corrupted payload.
        """
        cls = BackupArchiveCipher
        if len(blob) < cls._MIN_SIZE:
            raise StructuralError("File too small or corrupted.")
        if blob[:len(cls.MAGIC)] != cls.MAGIC:
            raise StructuralError("Invalid file format. Magic header mismatch.")

        offset = len(cls.MAGIC)
        salt = blob[offset:offset + cls.SALT_LENGTH]
        offset += cls.SALT_LENGTH
        iv = blob[offset:offset + cls.NONCE_LENGTH]
        sealed = blob[cls._HEADER_SIZE:]

        key = cls.derive_key(password, salt)
        try:
            return AESGCM(key).decrypt(iv, sealed, None)
        except InvalidTag as exc:
            raise AuthError("Decryption failed. Incorrect password or corrupted file.") from exc

    @staticmethod
    def encrypt_file(src: Path, dst: Path, password: str) -> None:
        data = Path(src).read_bytes()
        Path(dst).write_bytes(BackupArchiveCipher.encrypt_bytes(data, password))

    @staticmethod
    def decrypt_file(src: Path, dst: Path, password: str) -> None:
        """Decrypt ``src`` into ``dst``; nothing is written on failure."""
        plain = BackupArchiveCipher.decrypt_bytes(Path(src).read_bytes(), password)
        Path(dst).write_bytes(plain)

    @staticmethod
    def is_encrypted_bytes(data: bytes) -> bool:
        return data[:len(BackupArchiveCipher.MAGIC)] == BackupArchiveCipher.MAGIC

    @staticmethod
    def is_encrypted_file(path: Path) -> bool:
        """True for a ``.enc.zip`` name or a file starting with the magic."""
        path = Path(path)
        if path.name.endswith(ENCRYPTED_SUFFIX):
            return True
        try:
            with open(path, "rb") as fh:
                head = fh.read(len(BackupArchiveCipher.MAGIC))
        except OSError:
            return False
        return BackupArchiveCipher.is_encrypted_bytes(head)
