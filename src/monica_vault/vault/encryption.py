# Vault - Envelope Encryption Service
#
# Per-field AES-256-GCM under the session key.
# Storage format (base64): nonce(12) | tag(16) | ciphertext
#
# Master password -> PBKDF2-HMAC-SHA256 (100k) -> session key
# Each field gets its own random nonce.

import base64
import binascii
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .session import VaultSession


class DecryptStatus(str, Enum):
    OK = "ok"
    WRONG_KEY = "wrong_key"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of an envelope decrypt.

    ``plaintext`` is only meaningful when ``status`` is OK; an OK result
    with an empty plaintext means the stored value really was empty.
    """

    status: DecryptStatus
    plaintext: str = ""

    @property
    def ok(self) -> bool:
        return self.status is DecryptStatus.OK

    @classmethod
    def success(cls, plaintext: str) -> "DecryptResult":
        return cls(DecryptStatus.OK, plaintext)


WRONG_KEY = DecryptResult(DecryptStatus.WRONG_KEY)
MALFORMED = DecryptResult(DecryptStatus.MALFORMED)


class EnvelopeCipher:
    """
    Envelope encryption for single string fields.

    Flow:
    1. VaultKeyManager derives the session key at unlock
    2. encrypt() seals a field: fresh nonce, AES-256-GCM, nonce|tag|ct
    3. try_decrypt() opens it and reports why it failed, if it did
    4. decrypt() keeps the historical contract: failures become ""
    """

    PBKDF2_ITERATIONS = 100_000  # Shared with the companion client
    KEY_LENGTH = 32  # 256 bits for AES-256
    SALT_LENGTH = 16
    NONCE_LENGTH = 12  # 96-bit nonce for GCM
    TAG_LENGTH = 16

    @staticmethod
    def derive_key(password: str, salt: bytes) -> bytes:
        """
        Derive the 256-bit session key from the master password.

        Args:
            password: User's master password
            salt: Random salt persisted in the security config

        Returns:
            32-byte key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=EnvelopeCipher.KEY_LENGTH,
            salt=salt,
            iterations=EnvelopeCipher.PBKDF2_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(EnvelopeCipher.SALT_LENGTH)

    @staticmethod
    def encrypt(session: VaultSession, plaintext: str) -> str:
        """
        Seal ``plaintext`` under the session key.

        Empty input maps to empty output (no envelope is produced).

        Raises:
            LockedVaultError: The session holds no key.
        """
        with session.key() as key:
            if not plaintext:
                return ""
            nonce = os.urandom(EnvelopeCipher.NONCE_LENGTH)
            sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)

        # AESGCM returns ciphertext|tag; the envelope stores tag first.
        ciphertext, tag = sealed[:-EnvelopeCipher.TAG_LENGTH], sealed[-EnvelopeCipher.TAG_LENGTH:]
        return EnvelopeCipher.encode_for_storage(nonce + tag + ciphertext)

    @staticmethod
    def try_decrypt(session: VaultSession, envelope: str) -> DecryptResult:
        """
        Open an envelope and classify failures.

        Returns:
            DecryptResult: OK with plaintext, WRONG_KEY (authentication
            failed) or MALFORMED (not base64, too short, not UTF-8).

        Raises:
            LockedVaultError: The session holds no key.
        """
        with session.key() as key:
            if not envelope:
                return DecryptResult.success("")

            try:
                combined = EnvelopeCipher.decode_from_storage(envelope)
            except (binascii.Error, ValueError):
                return MALFORMED

            header = EnvelopeCipher.NONCE_LENGTH + EnvelopeCipher.TAG_LENGTH
            if len(combined) < header:
                return MALFORMED

            nonce = combined[:EnvelopeCipher.NONCE_LENGTH]
            tag = combined[EnvelopeCipher.NONCE_LENGTH:header]
            ciphertext = combined[header:]

            try:
                plain = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
            except InvalidTag:
                return WRONG_KEY

        try:
            return DecryptResult.success(plain.decode("utf-8"))
        except UnicodeDecodeError:
            return MALFORMED

    @staticmethod
    def decrypt(session: VaultSession, envelope: str) -> str:
        """Open an envelope; any failure yields an empty string.

        Raises:
            LockedVaultError: The session holds no key.
        """
        return EnvelopeCipher.try_decrypt(session, envelope).plaintext

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        return base64.b64decode(data.encode("ascii"), validate=True)


def looks_encrypted(value: Optional[str]) -> bool:
    """Heuristic for incoming password strings from backups.

    Longer than 24 characters and strict base64 means "already an
    envelope, store as-is". Plaintext passwords matching that profile
    are misclassified; the trade-off is accepted.
    """
    if not value or len(value) <= 24:
        return False
    try:
        base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return False
    return True
