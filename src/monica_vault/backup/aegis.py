"""Aegis Authenticator JSON import/export.

File layout::

    {
      "version": 1,
      "header": {
        "slots": [{"type": 1, "uuid", "key", "key_params": {"nonce", "tag"},
                   "n", "r", "p", "salt", "repaired"}],
        "params": {"nonce", "tag"}
      },
      "db": {...} | "<base64>"
    }

Encrypted files wrap a random 32-byte master key under a scrypt-derived
key (password slot, type 1); the master key then seals the ``db``
document with AES-256-GCM. Hex is lowercase, ``db`` is base64.

Tag placement: Aegis itself keeps GCM tags only in ``key_params.tag`` and
``params.tag``; older exports of ours also appended the tag to the
ciphertext. On import, a blob whose last 16 bytes equal the recorded tag
is taken to already carry it; otherwise the tag is appended before
decrypting. Exports follow the Aegis layout.
"""

import base64
import binascii
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..crypto import derive_key as scrypt_key
from ..errors import AuthError, PasswordRequiredError, StructuralError

logger = logging.getLogger(__name__)

AEGIS_VERSION = 1
DB_VERSION = 3
PASSWORD_SLOT = 1

SCRYPT_N = 32768
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 32
SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

_OTP_TYPES = ("totp", "hotp", "steam", "yandex", "motp")


@dataclass
class AegisEntry:
    """One OTP entry as it appears in the Aegis ``db.entries`` list."""

    name: str = ""
    issuer: str = ""
    note: str = ""
    secret: str = ""
    algorithm: str = "SHA1"
    digits: int = 6
    period: int = 30
    otp_type: str = "totp"
    counter: int = 0
    pin: str = ""
    uuid: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_json(self) -> Dict[str, Any]:
        kind = self.otp_type.lower() if self.otp_type.lower() in _OTP_TYPES else "totp"
        entry: Dict[str, Any] = {
            "type": kind,
            "uuid": self.uuid,
            "name": self.name,
            "issuer": self.issuer,
        }
        if self.note:
            entry["note"] = self.note
        info: Dict[str, Any] = {
            "secret": self.secret,
            "algo": self.algorithm,
            "digits": self.digits,
            "period": self.period,
        }
        if kind == "hotp":
            info["counter"] = self.counter
        if kind in ("yandex", "motp"):
            info["pin"] = self.pin
        entry["info"] = info
        return entry

    @classmethod
    def from_json(cls, node: Dict[str, Any]) -> "AegisEntry":
        if not isinstance(node, dict) or "name" not in node:
            raise StructuralError("Aegis entry without a name")
        info = node.get("info") or {}
        kind = str(node.get("type") or "totp").lower()
        try:
            return cls(
                uuid=node.get("uuid") or str(uuid.uuid4()),
                name=str(node.get("name") or ""),
                issuer=str(node.get("issuer") or ""),
                note=str(node.get("note") or ""),
                secret=str(info.get("secret") or ""),
                algorithm=str(info.get("algo") or "SHA1"),
                digits=int(info.get("digits") or 6),
                period=int(info.get("period") or 30),
                otp_type=kind if kind in _OTP_TYPES else "totp",
                counter=int(info.get("counter") or 0),
                pin=str(info.get("pin") or ""),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise StructuralError(f"Malformed Aegis entry {node.get('name')!r}") from exc


def _db_document(entries: List[AegisEntry]) -> Dict[str, Any]:
    return {"version": DB_VERSION, "entries": [e.to_json() for e in entries]}


def _seal(key: bytes, plaintext: bytes):
    """AES-GCM encrypt; returns (nonce, ciphertext, tag) separately."""
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return nonce, sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]


def _with_tag(blob: bytes, tag: bytes) -> bytes:
    """Return ciphertext||tag regardless of where the tag was stored."""
    if not tag:
        return blob
    if len(blob) >= TAG_LENGTH and blob[-TAG_LENGTH:] == tag:
        return blob
    return blob + tag


def _hex(value: Any, what: str) -> bytes:
    try:
        return bytes.fromhex(str(value or ""))
    except ValueError as exc:
        raise StructuralError(f"Invalid hex in {what}") from exc


class AegisExporter:
    """
    Writes and reads Aegis vault files.

    Args:
        n, r, p: scrypt cost parameters for new password slots
    """

    def __init__(self, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P):
        self.n = n
        self.r = r
        self.p = p

    # ── Export ──────────────────────────────────────────────────────

    def export_plain(self, entries: List[AegisEntry]) -> str:
        root = {
            "version": AEGIS_VERSION,
            "header": {"slots": [], "params": {"nonce": "", "tag": ""}},
            "db": _db_document(entries),
        }
        return json.dumps(root, indent=2, ensure_ascii=False)

    def export_encrypted(self, entries: List[AegisEntry], password: str) -> str:
        """Seal ``entries`` under a fresh master key wrapped by ``password``."""
        master_key = os.urandom(KEY_LENGTH)
        salt = os.urandom(SALT_LENGTH)
        derived = scrypt_key(password, salt, self.n, self.r, self.p, KEY_LENGTH)

        key_nonce, wrapped_key, key_tag = _seal(derived, master_key)
        db_bytes = json.dumps(_db_document(entries), ensure_ascii=False).encode("utf-8")
        db_nonce, db_cipher, db_tag = _seal(master_key, db_bytes)

        root = {
            "version": AEGIS_VERSION,
            "header": {
                "slots": [
                    {
                        "type": PASSWORD_SLOT,
                        "uuid": str(uuid.uuid4()),
                        "key": wrapped_key.hex(),
                        "key_params": {"nonce": key_nonce.hex(), "tag": key_tag.hex()},
                        "n": self.n,
                        "r": self.r,
                        "p": self.p,
                        "salt": salt.hex(),
                        "repaired": False,
                    }
                ],
                "params": {"nonce": db_nonce.hex(), "tag": db_tag.hex()},
            },
            "db": base64.b64encode(db_cipher).decode("ascii"),
        }
        return json.dumps(root, indent=2)

    # ── Import ──────────────────────────────────────────────────────

    @staticmethod
    def is_encrypted(text: str) -> bool:
        try:
            root = json.loads(text)
        except ValueError:
            return False
        return isinstance(root, dict) and isinstance(root.get("db"), str)

    def decrypt(self, text: str, password: Optional[str] = None) -> List[AegisEntry]:
        """
        Parse an Aegis file into entries; any malformed entry fails the call.

        Raises:
            StructuralError: Whole file or one of its entries is malformed
            PasswordRequiredError: Encrypted file and no password given
            AuthError: Password does not unwrap the master key
        """
        return [AegisEntry.from_json(node) for node in self.entry_nodes(text, password)]

    def entry_nodes(self, text: str, password: Optional[str] = None) -> List[Any]:
        """
        Raw ``db.entries`` nodes of an Aegis file, decrypting it if needed.

        Raises:
            StructuralError: Not JSON, no ``db``, no password slot, bad hex/base64
            PasswordRequiredError: Encrypted file and no password given
            AuthError: Password does not unwrap the master key
        """
        try:
            root = json.loads(text)
        except ValueError as exc:
            raise StructuralError("Invalid JSON") from exc
        if not isinstance(root, dict) or "db" not in root:
            raise StructuralError("Invalid Aegis file (no db)")

        db = root["db"]
        if isinstance(db, str):
            if not password:
                raise PasswordRequiredError("Password required for encrypted Aegis file")
            db = self._decrypt_db(root, db, password)
        if not isinstance(db, dict) or not isinstance(db.get("entries"), list):
            raise StructuralError("Aegis db has no entries list")
        return db["entries"]

    def _decrypt_db(self, root: Dict[str, Any], db_b64: str, password: str) -> Dict[str, Any]:
        header = root.get("header") or {}
        slots = header.get("slots") or []
        slot = next(
            (s for s in slots if isinstance(s, dict) and s.get("type") == PASSWORD_SLOT),
            None,
        )
        if slot is None:
            raise StructuralError("No password slot found")

        try:
            n, r, p = int(slot["n"]), int(slot["r"]), int(slot["p"])
            key_params = slot.get("key_params") or {}
            salt = _hex(slot["salt"], "slot salt")
            wrapped = _hex(slot["key"], "slot key")
        except (KeyError, TypeError, ValueError) as exc:
            raise StructuralError("Malformed password slot") from exc
        key_nonce = _hex(key_params.get("nonce"), "slot nonce")
        key_tag = _hex(key_params.get("tag"), "slot tag")

        try:
            derived = scrypt_key(password, salt, n, r, p, KEY_LENGTH)
        except ValueError as exc:
            raise StructuralError(f"Invalid scrypt parameters: {exc}") from exc

        try:
            master_key = AESGCM(derived).decrypt(key_nonce, _with_tag(wrapped, key_tag), None)
        except InvalidTag as exc:
            raise AuthError("Incorrect password") from exc
        except ValueError as exc:
            raise StructuralError("Malformed slot nonce") from exc

        params = header.get("params") or {}
        db_nonce = _hex(params.get("nonce"), "db nonce")
        db_tag = _hex(params.get("tag"), "db tag")
        try:
            blob = base64.b64decode(db_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise StructuralError("db is not valid base64") from exc

        try:
            plain = AESGCM(master_key).decrypt(db_nonce, _with_tag(blob, db_tag), None)
        except (InvalidTag, ValueError) as exc:
            raise StructuralError("Aegis db failed to decrypt") from exc

        try:
            return json.loads(plain.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise StructuralError("Decrypted db is not JSON") from exc
