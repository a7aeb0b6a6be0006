# Vault - Entry Data Models
#
# VaultEntry      one stored secret (password or secure item)
# Category        user-defined grouping for password entries
# TotpData        \
# BankCardData     |  plaintext JSON documents sealed into VaultEntry.payload;
# DocumentData     |  keys are camelCase to match the companion mobile client
# NoteData        /
#
# Timestamps are timezone-aware UTC datetimes in memory and unix
# milliseconds on the wire.

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class EntryKind(str, Enum):
    """Entry kinds; values are the CSV ``Type`` column strings."""

    PASSWORD = "PASSWORD"
    TOTP = "TOTP"
    BANK_CARD = "BANK_CARD"
    DOCUMENT = "DOCUMENT"
    NOTE = "NOTE"

    @classmethod
    def parse(cls, value: str) -> "EntryKind":
        """Unknown type strings import as notes."""
        try:
            return cls((value or "").strip().upper())
        except ValueError:
            return cls.NOTE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_millis(value: Any) -> datetime:
    """Parse unix milliseconds; garbage maps to now."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow()


@dataclass
class VaultEntry:
    """A stored secret.

    ``payload`` is always ciphertext (EnvelopeCipher output): the
    encrypted password for PASSWORD entries, an encrypted JSON document
    for every other kind. ``username`` and ``website`` are only used by
    PASSWORD entries.
    """

    kind: EntryKind
    title: str
    payload: str = ""
    notes: str = ""
    username: str = ""
    website: str = ""
    is_favorite: bool = False
    category_id: Optional[int] = None
    sort_order: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        """Import skip key: (title, username) for passwords, (title, kind) otherwise."""
        if self.kind is EntryKind.PASSWORD:
            return (EntryKind.PASSWORD.value, self.title, self.username or "")
        return (self.kind.value, self.title, "")


@dataclass
class Category:
    name: str
    sort_order: int = 0
    id: Optional[int] = None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class JsonDocument:
    """Mixin for payload documents serialized with camelCase keys."""

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Build from a dict, tolerating missing keys and PascalCase keys."""
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                value = data[key]
            elif key[:1].upper() + key[1:] in data:
                value = data[key[:1].upper() + key[1:]]
            else:
                continue
            if value is None and f.name != "bound_password_id":
                continue
            kwargs[f.name] = value
        return cls(**kwargs)

    @classmethod
    def from_json(cls, text: str):
        """Parse a JSON document; empty or invalid text yields defaults."""
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except ValueError:
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls.from_dict(data)


@dataclass
class TotpData(JsonDocument):
    secret: str = ""
    issuer: str = ""
    account_name: str = ""
    period: int = 30
    digits: int = 6
    algorithm: str = "SHA1"
    otp_type: str = "TOTP"
    counter: int = 0
    pin: str = ""
    link: str = ""
    associated_app: str = ""
    bound_password_id: Optional[int] = None

    def __post_init__(self):
        self.period = _as_int(self.period, 30)
        self.digits = _as_int(self.digits, 6)
        self.counter = _as_int(self.counter, 0)


@dataclass
class BankCardData(JsonDocument):
    card_number: str = ""
    cardholder_name: str = ""
    expiry_month: str = ""
    expiry_year: str = ""
    cvv: str = ""
    bank_name: str = ""
    card_type: str = "DEBIT"
    billing_address: str = ""
    image_paths: List[str] = field(default_factory=list)


@dataclass
class DocumentData(JsonDocument):
    document_number: str = ""
    full_name: str = ""
    issued_date: str = ""
    expiry_date: str = ""
    issued_by: str = ""
    nationality: str = ""
    document_type: str = "ID_CARD"
    image_paths: List[str] = field(default_factory=list)


@dataclass
class NoteData(JsonDocument):
    content: str = ""


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
