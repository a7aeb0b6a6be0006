"""Vault entry serialization: CSV, Aegis JSON and backup-archive records.

Every surface here works on decrypted data at the edge and encrypted
payloads inside the store:

    export: store -> EnvelopeCipher.try_decrypt -> CSV / Aegis / JSON records
    import: CSV / Aegis / JSON records -> dedup -> EnvelopeCipher.encrypt -> store

Import never merges or overwrites. A record whose dedup key is already
present (title+username for passwords, title+kind for everything else)
is skipped. A record that cannot be decoded is counted as failed and the
batch carries on; nothing is rolled back.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..core import EventType, get_audit_logger
from ..errors import PartialImportFailure, StructuralError
from ..vault.encryption import EnvelopeCipher, looks_encrypted
from ..vault.models import (
    EntryKind,
    TotpData,
    VaultEntry,
    from_millis,
    to_millis,
    utcnow,
)
from ..vault.session import VaultSession
from ..vault.store import EntryStore
from . import csv_format
from .aegis import AegisEntry, AegisExporter

logger = logging.getLogger(__name__)

IMAGE_KINDS = (EntryKind.BANK_CARD, EntryKind.DOCUMENT)


class ExportOption(str, Enum):
    """Which entries an export includes."""

    ALL = "all"
    PASSWORDS = "passwords"
    TOTP = "totp"
    CARDS_DOCS = "cards_docs"
    NOTES = "notes"

    @property
    def kinds(self) -> Sequence[EntryKind]:
        return {
            ExportOption.ALL: tuple(EntryKind),
            ExportOption.PASSWORDS: (EntryKind.PASSWORD,),
            ExportOption.TOTP: (EntryKind.TOTP,),
            ExportOption.CARDS_DOCS: IMAGE_KINDS,
            ExportOption.NOTES: (EntryKind.NOTE,),
        }[self]


@dataclass
class ImportResult:
    """Counts for one import batch."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0

    def __iadd__(self, other: "ImportResult") -> "ImportResult":
        self.imported += other.imported
        self.skipped += other.skipped
        self.failed += other.failed
        return self

    def to_dict(self) -> Dict[str, int]:
        return {"imported": self.imported, "skipped": self.skipped, "failed": self.failed}


# ── Payload helpers ─────────────────────────────────────────────────


def format_password_data(username: str, password: str, website: str = "") -> str:
    data = f"username:{username};password:{password}"
    if website:
        data += f";website:{website}"
    return data


def parse_password_data(data: str) -> Dict[str, str]:
    """Inverse of format_password_data: ``k:v`` pairs split on ';'."""
    parts: Dict[str, str] = {}
    for chunk in (data or "").split(";"):
        if ":" not in chunk:
            continue
        key, value = chunk.split(":", 1)
        parts[key.strip()] = value.strip()
    return parts


def split_image_paths(data: str):
    """
    Pull ``imagePaths`` out of a card/document JSON payload.

    Returns:
        (data without imagePaths, imagePaths as JSON text or "")
    """
    try:
        doc = json.loads(data)
    except ValueError:
        return data, ""
    if not isinstance(doc, dict):
        return data, ""
    image_paths = ""
    for key in ("imagePaths", "ImagePaths"):
        if key in doc:
            image_paths = json.dumps(doc[key])
            break
    cleaned = {k: v for k, v in doc.items() if k.lower() != "imagepaths"}
    return json.dumps(cleaned, ensure_ascii=False), image_paths


def inject_image_paths(data: str, image_paths: str) -> str:
    """Put a CSV ImagePaths column back into the payload JSON."""
    if not image_paths or image_paths.strip() == "[]":
        return data
    try:
        paths = json.loads(image_paths)
        doc = json.loads(data) if data else {}
    except ValueError:
        return data
    if not isinstance(paths, list) or not isinstance(doc, dict):
        return data
    valid = [p for p in paths if isinstance(p, str) and p]
    if not valid:
        return data
    doc = {k: v for k, v in doc.items() if k.lower() != "imagepaths"}
    doc["imagePaths"] = valid
    return json.dumps(doc, ensure_ascii=False)


def image_paths_of(data: str) -> List[str]:
    """File names referenced by a card/document payload."""
    try:
        doc = json.loads(data)
    except ValueError:
        return []
    if not isinstance(doc, dict):
        return []
    paths = doc.get("imagePaths", doc.get("ImagePaths"))
    if not isinstance(paths, list):
        return []
    return [p for p in paths if isinstance(p, str) and p]


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "true"


def format_bool(value: bool) -> str:
    return "True" if value else "False"


class BackupCodec:
    """
    Converts between stored entries and the interchange formats.

    Args:
        store: Entry store to read from / merge into
        session: Unlocked session used for every encrypt/decrypt
        aegis: Aegis reader/writer (scrypt parameters live there)
    """

    def __init__(
        self,
        store: EntryStore,
        session: VaultSession,
        aegis: Optional[AegisExporter] = None,
    ):
        self.store = store
        self.session = session
        self.aegis = aegis or AegisExporter()

    # ── Crypto edges ────────────────────────────────────────────────

    def open_payload(self, entry: VaultEntry) -> str:
        """
        Decrypt an entry's payload.

        Raises:
            StructuralError: Payload cannot be opened with the session key.
        """
        result = EnvelopeCipher.try_decrypt(self.session, entry.payload)
        if not result.ok:
            raise StructuralError(
                f"Cannot decrypt entry {entry.id} ({result.status.value})"
            )
        return result.plaintext

    def seal(self, plaintext: str) -> str:
        return EnvelopeCipher.encrypt(self.session, plaintext)

    def _selected(self, option: ExportOption) -> List[VaultEntry]:
        kinds = set(option.kinds)
        return [e for e in self.store.entries() if e.kind in kinds]

    def _export_each(self, entries: Iterable[VaultEntry], render: Callable[[VaultEntry], Any]) -> List[Any]:
        out = []
        for entry in entries:
            try:
                out.append(render(entry))
            except StructuralError as exc:
                logger.warning("Skipping entry on export: %s", exc)
        return out

    # ── CSV ─────────────────────────────────────────────────────────

    def entry_to_row(self, entry: VaultEntry) -> List[str]:
        """One 9-column CSV row; card/document images move to ImagePaths."""
        plaintext = self.open_payload(entry)
        image_paths = ""
        if entry.kind is EntryKind.PASSWORD:
            data = format_password_data(entry.username, plaintext, entry.website)
        elif entry.kind in IMAGE_KINDS:
            data, image_paths = split_image_paths(plaintext)
        else:
            data = plaintext
        return [
            str(entry.id or ""),
            entry.kind.value,
            entry.title,
            data,
            entry.notes,
            format_bool(entry.is_favorite),
            image_paths,
            str(to_millis(entry.created_at)),
            str(to_millis(entry.updated_at)),
        ]

    def export_csv(self, option: ExportOption = ExportOption.ALL) -> str:
        entries = self._selected(option)
        rows = self._export_each(entries, self.entry_to_row)
        self._audit_export("csv", option, len(rows))
        return csv_format.write_csv(csv_format.ENTRY_HEADERS, rows)

    def entries_csv(self, entries: Iterable[VaultEntry]) -> str:
        """9-column CSV for an explicit entry list (backup archives)."""
        rows = self._export_each(entries, self.entry_to_row)
        return csv_format.write_csv(csv_format.ENTRY_HEADERS, rows)

    def import_csv(self, text: str) -> ImportResult:
        """
        Import a 9-column CSV export.

        Raises:
            StructuralError: Empty file or header with fewer than 9 columns.
        """
        rows = csv_format.parse_csv(text)
        if not rows:
            raise StructuralError("File is empty.")
        if len(rows[0]) < len(csv_format.ENTRY_HEADERS):
            raise StructuralError("Invalid CSV format (headers mismatch).")
        result = self.import_entry_rows(rows[1:])
        self.store.save()
        self._audit_import("csv", result)
        return result

    def import_entry_rows(self, rows: Iterable[List[str]], skip_passwords: bool = False) -> ImportResult:
        """Merge parsed 9-column rows (header already removed)."""
        result = ImportResult()
        for fields in rows:
            if len(fields) < len(csv_format.ENTRY_HEADERS):
                result.failed += 1
                continue
            if skip_passwords and fields[1].strip().upper() == EntryKind.PASSWORD.value:
                continue
            try:
                entry = self._row_to_entry(fields)
            except PartialImportFailure as exc:
                logger.warning("%s", exc)
                result.failed += 1
                continue
            self._merge(entry, result)
        return result

    def _row_to_entry(self, fields: List[str]) -> VaultEntry:
        kind = EntryKind.parse(fields[1])
        title = fields[2]
        data = fields[3]
        if not title:
            raise PartialImportFailure(title, "missing title")

        entry = VaultEntry(
            kind=kind,
            title=title,
            notes=fields[4],
            is_favorite=parse_bool(fields[5]),
            created_at=from_millis(fields[7]) if fields[7] else utcnow(),
            updated_at=from_millis(fields[8]) if fields[8] else utcnow(),
        )
        if kind is EntryKind.PASSWORD:
            parts = parse_password_data(data)
            entry.username = parts.get("username", "")
            entry.website = parts.get("website", "")
            entry.payload = parts.get("password", "")
        else:
            if kind in IMAGE_KINDS:
                data = inject_image_paths(data, fields[6])
            entry.payload = data
        return entry

    def _merge(self, entry: VaultEntry, result: ImportResult, pre_sealed: bool = False) -> bool:
        """Dedup, seal and stage one plaintext entry. Returns True if added."""
        if self.store.has_duplicate(entry):
            result.skipped += 1
            return False
        if not pre_sealed:
            entry.payload = self.seal(entry.payload)
        self.store.add(entry)
        result.imported += 1
        return True

    # ── Aegis ───────────────────────────────────────────────────────

    def totp_to_aegis(self, entry: VaultEntry) -> AegisEntry:
        data = TotpData.from_json(self.open_payload(entry))
        return AegisEntry(
            name=data.account_name or entry.title,
            issuer=data.issuer,
            note=entry.notes,
            secret=data.secret,
            algorithm=data.algorithm,
            digits=data.digits,
            period=data.period,
            otp_type=data.otp_type.lower(),
            counter=data.counter,
            pin=data.pin,
        )

    def export_aegis(self, password: Optional[str] = None) -> str:
        """TOTP entries as an Aegis file; encrypted when ``password`` is given."""
        totp = self.store.entries(EntryKind.TOTP)
        items = self._export_each(totp, self.totp_to_aegis)
        self._audit_export("aegis", ExportOption.TOTP, len(items))
        if password:
            return self.aegis.export_encrypted(items, password)
        return self.aegis.export_plain(items)

    def import_aegis(self, text: str, password: Optional[str] = None) -> ImportResult:
        """
        Import an Aegis file as TOTP entries.

        A malformed entry is counted as failed; the rest still import.

        Raises:
            PasswordRequiredError / AuthError / StructuralError from AegisExporter.entry_nodes
        """
        result = ImportResult()
        for node in self.aegis.entry_nodes(text, password):
            try:
                item = AegisEntry.from_json(node)
            except StructuralError as exc:
                logger.warning("Skipping Aegis entry: %s", exc)
                result.failed += 1
                continue
            data = TotpData(
                secret=item.secret,
                issuer=item.issuer,
                account_name=item.name,
                period=item.period,
                digits=item.digits,
                algorithm=item.algorithm,
                otp_type=item.otp_type.upper(),
                counter=item.counter,
                pin=item.pin,
            )
            entry = VaultEntry(
                kind=EntryKind.TOTP,
                title=item.name,
                notes=item.note,
                payload=data.to_json(),
            )
            self._merge(entry, result)
        self.store.save()
        self._audit_import("aegis", result)
        return result

    def import_text(self, text: str, password: Optional[str] = None) -> ImportResult:
        """Import a file's contents, picking Aegis JSON or CSV by its first character."""
        body = csv_format.strip_bom(text)
        if body.lstrip().startswith("{"):
            return self.import_aegis(body, password)
        return self.import_csv(body)

    # ── Backup archive records ──────────────────────────────────────

    def password_record(self, entry: VaultEntry) -> Dict[str, Any]:
        """JSON record for ``passwords/password_<id>_<createdAt>.json``."""
        category = self.store.get_category(entry.category_id)
        return {
            "id": entry.id,
            "title": entry.title,
            "username": entry.username,
            "password": self.open_payload(entry),
            "website": entry.website,
            "notes": entry.notes,
            "isFavorite": entry.is_favorite,
            "categoryId": entry.category_id,
            "categoryName": category.name if category else None,
            "createdAt": to_millis(entry.created_at),
            "updatedAt": to_millis(entry.updated_at),
        }

    def note_record(self, entry: VaultEntry) -> Dict[str, Any]:
        """JSON record for ``notes/note_<id>_<createdAt>.json``."""
        return {
            "id": entry.id,
            "title": entry.title,
            "notes": entry.notes,
            "itemData": self.open_payload(entry),
            "isFavorite": entry.is_favorite,
            "createdAt": to_millis(entry.created_at),
            "updatedAt": to_millis(entry.updated_at),
        }

    def categories_document(self) -> List[Dict[str, Any]]:
        return [
            {"id": c.id, "name": c.name, "sortOrder": c.sort_order}
            for c in self.store.categories()
        ]

    def password_csv(self, entries: Iterable[VaultEntry]) -> str:
        """Companion password CSV (Username/Password columns, no Type)."""

        def render(entry: VaultEntry) -> List[str]:
            return [
                str(entry.id or ""),
                entry.title,
                entry.username,
                self.open_payload(entry),
                entry.website,
                entry.notes,
                format_bool(entry.is_favorite),
                str(to_millis(entry.created_at)),
                str(to_millis(entry.updated_at)),
            ]

        rows = self._export_each(entries, render)
        return csv_format.write_csv(csv_format.PASSWORD_HEADERS, rows)

    def import_categories(self, document: Any) -> int:
        """Create categories named in ``categories.json`` that do not exist yet."""
        if not isinstance(document, list):
            raise StructuralError("categories.json is not a list")
        created = 0
        for item in document:
            name = item.get("name") if isinstance(item, dict) else None
            if not name or self.store.find_category(name) is not None:
                continue
            self.store.ensure_category(name)
            created += 1
        return created

    def import_password_record(self, record: Any, result: ImportResult) -> None:
        """
        Merge one password JSON record.

        Passwords that look like envelopes (long, strict base64) are stored
        as-is; anything else is treated as plaintext and sealed.

        Raises:
            PartialImportFailure: Record is not a usable object.
        """
        if not isinstance(record, dict) or not record.get("title"):
            raise PartialImportFailure(str(record)[:40], "not a password record")

        password = str(record.get("password") or "")
        entry = VaultEntry(
            kind=EntryKind.PASSWORD,
            title=str(record["title"]),
            username=str(record.get("username") or ""),
            website=str(record.get("website") or ""),
            notes=str(record.get("notes") or ""),
            is_favorite=parse_bool(record.get("isFavorite")),
            created_at=from_millis(record.get("createdAt")),
            updated_at=from_millis(record.get("updatedAt")),
            payload=password,
        )
        if self.store.has_duplicate(entry):
            result.skipped += 1
            return

        category_name = record.get("categoryName")
        if category_name:
            entry.category_id = self.store.ensure_category(str(category_name)).id

        self._merge(entry, result, pre_sealed=looks_encrypted(password))

    def import_note_record(self, record: Any, result: ImportResult) -> None:
        """
        Merge one note JSON record (``itemData`` is the plaintext payload).

        Raises:
            PartialImportFailure: Record is not a usable object.
        """
        if not isinstance(record, dict) or not record.get("title"):
            raise PartialImportFailure(str(record)[:40], "not a note record")
        entry = VaultEntry(
            kind=EntryKind.NOTE,
            title=str(record["title"]),
            notes=str(record.get("notes") or ""),
            is_favorite=parse_bool(record.get("isFavorite")),
            created_at=from_millis(record.get("createdAt")),
            updated_at=from_millis(record.get("updatedAt")),
            payload=str(record.get("itemData") or ""),
        )
        self._merge(entry, result)

    # ── Audit ───────────────────────────────────────────────────────

    def _audit_export(self, fmt: str, option: ExportOption, count: int) -> None:
        get_audit_logger().log_vault_event(
            EventType.DATA_EXPORTED,
            f"Exported {count} entries as {fmt}",
            details={"format": fmt, "option": option.value, "count": count},
        )

    def _audit_import(self, fmt: str, result: ImportResult) -> None:
        get_audit_logger().log_vault_event(
            EventType.DATA_IMPORTED,
            f"Imported {result.imported} entries from {fmt}",
            details={"format": fmt, **result.to_dict()},
        )
