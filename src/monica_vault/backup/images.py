# Backup - Image Attachment Codecs
#
# Two image-at-rest formats coexist and both must keep working:
#
#   LocalEnvelopeImageCodec  base64(image) sealed with the session key
#                            (EnvelopeCipher), stored as UTF-8 text
#   CompanionImageCodec      AES-CBC/PKCS7 under the mobile client's fixed
#                            key and IV, stored as raw binary
#
# The companion key is public and provides no confidentiality; it exists
# only so both clients can read each other's attachments. Which codec a
# stored file uses is decided by sniffing its bytes: printable ASCII plus
# CR/LF means local text, anything else is companion binary.

import base64
import binascii
import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import AuthError, StructuralError
from ..vault.encryption import DecryptStatus, EnvelopeCipher
from ..vault.session import VaultSession

logger = logging.getLogger(__name__)

COMPANION_KEY = b"MonicaSecureKey1"
COMPANION_IV = b"MonicaSecureIV16"
LOCAL_SUFFIX = ".enc"


def is_text_format(raw: bytes) -> bool:
    """True if every byte is printable ASCII, CR or LF (local envelope text)."""
    return bool(raw) and all(32 <= b < 127 or b in (10, 13) for b in raw)


class ImageCodec(ABC):
    """Encodes plain image bytes to one at-rest format and back."""

    name = ""

    @abstractmethod
    def encode(self, image: bytes) -> bytes:
        ...

    @abstractmethod
    def decode(self, stored: bytes) -> bytes:
        ...


class LocalEnvelopeImageCodec(ImageCodec):
    """Session-key envelope over the base64 image."""

    name = "local"

    def __init__(self, session: VaultSession):
        self.session = session

    def encode(self, image: bytes) -> bytes:
        b64 = base64.b64encode(image).decode("ascii")
        return EnvelopeCipher.encrypt(self.session, b64).encode("utf-8")

    def decode(self, stored: bytes) -> bytes:
        """
        Raises:
            AuthError: Sealed under a different session key.
            StructuralError: Not an envelope, or the payload is not base64.
        """
        result = EnvelopeCipher.try_decrypt(self.session, stored.decode("ascii", errors="replace").strip())
        if result.status is DecryptStatus.WRONG_KEY:
            raise AuthError("Image was encrypted with a different key")
        if not result.ok or not result.plaintext:
            raise StructuralError("Image file is not a valid envelope")
        try:
            return base64.b64decode(result.plaintext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise StructuralError("Image envelope does not hold base64") from exc


class CompanionImageCodec(ImageCodec):
    """Fixed-key AES-CBC used by the mobile client.

    The key is 16 bytes, so the cipher is AES-128 even though the mobile
    client labels it AES-256.
    """

    name = "companion"

    def __init__(self, key: bytes = COMPANION_KEY, iv: bytes = COMPANION_IV):
        self.key = key
        self.iv = iv

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self.key), modes.CBC(self.iv))

    def encode(self, image: bytes) -> bytes:
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(image) + padder.finalize()
        encryptor = self._cipher().encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decode(self, stored: bytes) -> bytes:
        """Decrypt; data that is not valid CBC/PKCS7 is returned unchanged
        (treated as an unencrypted image)."""
        try:
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(stored) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            logger.debug("Companion decrypt failed; using raw bytes")
            return stored


def sniff_codec(raw: bytes, session: VaultSession) -> ImageCodec:
    if is_text_format(raw):
        return LocalEnvelopeImageCodec(session)
    return CompanionImageCodec()


class ImageStore:
    """
    Encrypted attachment directory.

    Files are addressed by bare file name; names are never rewritten on
    import because entry payloads reference them in ``imagePaths``.

    Args:
        attachments_dir: Directory holding the attachment files
        session: Session whose key seals local-format files
    """

    def __init__(self, attachments_dir: Union[str, Path], session: VaultSession):
        self.attachments_dir = Path(attachments_dir)
        self.session = session
        self.local = LocalEnvelopeImageCodec(session)
        self.companion = CompanionImageCodec()

    def _path(self, name: str) -> Path:
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValueError(f"Invalid attachment name: {name!r}")
        return self.attachments_dir / name

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def save_image(self, image: bytes) -> str:
        """Store new image bytes in local format; returns the generated name."""
        name = f"{uuid.uuid4()}{LOCAL_SUFFIX}"
        self._write(name, self.local.encode(image))
        return name

    def load_image(self, name: str) -> Optional[bytes]:
        """Plain image bytes, or None if missing or unreadable with this key."""
        try:
            raw = self._path(name).read_bytes()
        except FileNotFoundError:
            return None
        try:
            return sniff_codec(raw, self.session).decode(raw)
        except (AuthError, StructuralError) as exc:
            logger.warning("Cannot decode attachment %s: %s", name, exc)
            return None

    def delete_image(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            return True
        except FileNotFoundError:
            return False

    def verify(self, name: str) -> bool:
        """True if the stored file decodes to non-empty bytes with the current key."""
        image = self.load_image(name)
        return bool(image)

    def import_from_path(self, src: Union[str, Path]) -> Tuple[str, bool]:
        """
        Bring an attachment from a backup into this store.

        The source may be in either format. The file keeps its name; an
        existing file with that name is kept when it still decodes,
        otherwise it is replaced.

        Returns:
            (name, is_new): is_new is False when the import was skipped
        """
        src = Path(src)
        name = src.name
        if self.exists(name):
            if self.verify(name):
                return name, False
            logger.info("Replacing unreadable attachment %s", name)

        raw = src.read_bytes()
        image = sniff_codec(raw, self.session).decode(raw)
        self._write(name, self.local.encode(image))
        return name, True

    def export_for_companion(self, name: str) -> bytes:
        """
        Re-encode a stored attachment under the companion fixed key.

        Raises:
            FileNotFoundError: No such attachment.
            StructuralError: The local file cannot be decoded with the current key.
        """
        raw = self._path(name).read_bytes()
        codec = sniff_codec(raw, self.session)
        if isinstance(codec, CompanionImageCodec):
            return raw
        try:
            image = codec.decode(raw)
        except AuthError as exc:
            raise StructuralError(f"Attachment {name} is sealed under another key") from exc
        return self.companion.encode(image)

    def _write(self, name: str, data: bytes) -> None:
        self.attachments_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

