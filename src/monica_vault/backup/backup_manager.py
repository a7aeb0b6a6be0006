"""Backup orchestrator: build, upload, download and merge vault backups.

A backup is a zip with forward-slash entry names::

    passwords/password_<id>_<createdAt>.json
    notes/note_<id>_<createdAt>.json
    categories.json
    Monica_<ts>_password.csv
    Monica_<ts>_totp.csv
    Monica_<ts>_cards_docs.csv
    images/<name>                  companion (fixed-key AES-CBC) format

optionally wrapped by BackupArchiveCipher, and stored on WebDAV as
``monica_backup_<YYYYMMDD_HHMMSS>.zip`` (``.enc.zip`` when encrypted).
Restore merges into the live store; it never overwrites existing entries.
"""

import asyncio
import io
import json
import logging
import shutil
import sqlite3
import tempfile
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..core import EventSeverity, EventType, get_audit_logger
from ..errors import (
    AuthError,
    PartialImportFailure,
    PasswordRequiredError,
    StructuralError,
    VaultError,
)
from ..vault.models import EntryKind, to_millis
from ..vault.session import VaultSession
from ..vault.store import EntryStore
from . import csv_format
from .backup_crypto import ENCRYPTED_SUFFIX, BackupArchiveCipher
from .codec import IMAGE_KINDS, BackupCodec, ImportResult, image_paths_of
from .images import ImageStore
from .webdav import WebDavTransport

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "monica_backup_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

PASSWORDS_DIR = "passwords"
NOTES_DIR = "notes"
IMAGES_DIR = "images"
CATEGORIES_FILE = "categories.json"

# Subfolders that mark a directory as the backup content root.
_CONTENT_MARKERS = (PASSWORDS_DIR, IMAGES_DIR)


@dataclass
class BackupOptions:
    """What goes into a backup."""

    include_passwords: bool = True
    include_totp: bool = True
    include_notes: bool = True
    include_cards_docs: bool = True
    include_images: bool = True
    include_categories: bool = True


@dataclass
class RestoreReport:
    """Entry counts plus attachment counts for one restore."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
    images_imported: int = 0
    images_skipped: int = 0

    def add(self, result: ImportResult) -> None:
        self.imported += result.imported
        self.skipped += result.skipped
        self.failed += result.failed

    def to_dict(self) -> dict:
        return asdict(self)


def backup_name(timestamp: str, encrypted: bool) -> str:
    suffix = ENCRYPTED_SUFFIX if encrypted else ".zip"
    return f"{BACKUP_PREFIX}{timestamp}{suffix}"


def zip_directory(root: Path) -> bytes:
    """Deflate every file under ``root``; entry names always use '/'."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(root.rglob("*")):
            if path.is_file():
                zf.write(path, path.relative_to(root).as_posix())
    return buf.getvalue()


def find_content_root(extract_dir: Path) -> Path:
    """
    Directory holding the backup tree.

    Archives made by zipping a folder have everything one level down; if
    the top level has no files, the first subdirectory containing a CSV or
    a passwords/images folder wins.
    """
    if any(p.is_file() for p in extract_dir.iterdir()):
        return extract_dir
    for sub in sorted(p for p in extract_dir.iterdir() if p.is_dir()):
        if any(sub.glob("*.csv")) or any((sub / m).is_dir() for m in _CONTENT_MARKERS):
            return sub
    return extract_dir


class BackupOrchestrator:
    """
    Creates and restores WebDAV backups of one vault.

    Runs are serialized with an asyncio.Lock; zip, archive crypto and
    store work happen in worker threads via asyncio.to_thread.

    Args:
        store: Live entry store
        session: Unlocked vault session
        image_store: Attachment directory for the same session
        transport: Connected WebDAV transport
        codec: Serializer (defaults to BackupCodec over store/session)
    """

    def __init__(
        self,
        store: EntryStore,
        session: VaultSession,
        image_store: ImageStore,
        transport: WebDavTransport,
        codec: Optional[BackupCodec] = None,
    ):
        self.store = store
        self.session = session
        self.image_store = image_store
        self.transport = transport
        self.codec = codec or BackupCodec(store, session)
        self._lock = asyncio.Lock()

    # ── Create ───────────────────────────────────────────────────────

    async def create_backup(
        self,
        encrypt_password: Optional[str] = None,
        options: Optional[BackupOptions] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Build, optionally encrypt and upload a backup.

        Returns:
            Remote file name of the uploaded archive.

        Raises:
            TransportError: Upload failed.
        """
        options = options or BackupOptions()
        timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        name = backup_name(timestamp, encrypted=bool(encrypt_password))

        async with self._lock:
            try:
                data = await asyncio.to_thread(self.build_archive, timestamp, options)
                if encrypt_password:
                    data = await asyncio.to_thread(
                        BackupArchiveCipher.encrypt_bytes, data, encrypt_password
                    )
                await self.transport.upload(name, data)
            except VaultError as exc:
                self._audit(EventType.BACKUP_FAILED, f"Backup failed: {exc}",
                            {"name": name}, EventSeverity.WARNING)
                raise

        self._audit(EventType.BACKUP_CREATED, f"Backup created: {name}", {
            "name": name,
            "encrypted": bool(encrypt_password),
            "size_bytes": len(data),
        })
        return name

    def build_archive(self, timestamp: str, options: BackupOptions) -> bytes:
        """Write the backup tree to a temp dir and return it zipped."""
        tmp_dir = Path(tempfile.mkdtemp(prefix=f"{BACKUP_PREFIX}{timestamp}_"))
        try:
            self._write_tree(tmp_dir, timestamp, options)
            return zip_directory(tmp_dir)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def _write_tree(self, root: Path, timestamp: str, options: BackupOptions) -> None:
        prefix = f"Monica_{timestamp}"

        if options.include_passwords:
            passwords = self.store.entries(EntryKind.PASSWORD)
            folder = root / PASSWORDS_DIR
            folder.mkdir()
            for entry in passwords:
                self._write_record(
                    folder / f"password_{entry.id}_{to_millis(entry.created_at)}.json",
                    self.codec.password_record,
                    entry,
                )
            (root / f"{prefix}_password.csv").write_text(
                self.codec.password_csv(passwords), encoding="utf-8"
            )

            categories = self.codec.categories_document()
            if options.include_categories and categories:
                _write_json(root / CATEGORIES_FILE, categories)

        if options.include_notes:
            folder = root / NOTES_DIR
            folder.mkdir()
            for entry in self.store.entries(EntryKind.NOTE):
                self._write_record(
                    folder / f"note_{entry.id}_{to_millis(entry.created_at)}.json",
                    self.codec.note_record,
                    entry,
                )

        if options.include_totp:
            (root / f"{prefix}_totp.csv").write_text(
                self.codec.entries_csv(self.store.entries(EntryKind.TOTP)),
                encoding="utf-8",
            )

        if options.include_cards_docs:
            cards = [e for e in self.store.entries() if e.kind in IMAGE_KINDS]
            (root / f"{prefix}_cards_docs.csv").write_text(
                self.codec.entries_csv(cards), encoding="utf-8"
            )
            if options.include_images:
                self._write_images(root / IMAGES_DIR, cards)

    def _write_record(self, path: Path, render, entry) -> None:
        try:
            _write_json(path, render(entry))
        except StructuralError as exc:
            logger.warning("Leaving entry %s out of backup: %s", entry.id, exc)

    def _write_images(self, folder: Path, entries) -> None:
        """Copy attachments referenced by card/document entries, re-encoded
        for the companion client under the same file name."""
        folder.mkdir()
        names = set()
        for entry in entries:
            try:
                names.update(image_paths_of(self.codec.open_payload(entry)))
            except StructuralError as exc:
                logger.warning("Cannot read images of entry %s: %s", entry.id, exc)

        for name in sorted(names):
            try:
                (folder / name).write_bytes(self.image_store.export_for_companion(name))
            except (OSError, ValueError, StructuralError) as exc:
                logger.warning("Skipping attachment %s: %s", name, exc)

    # ── Restore ──────────────────────────────────────────────────────

    async def restore_backup(self, name: str, password: Optional[str] = None) -> RestoreReport:
        """Download a backup and merge it into the store.

        Raises:
            PasswordRequiredError: Encrypted archive and no password.
            AuthError: Wrong archive password.
            StructuralError: Corrupt archive.
            TransportError: Download failed.
        """
        async with self._lock:
            try:
                blob = await self.transport.download(name)
                report = await asyncio.to_thread(self.restore_archive, blob, name, password)
            except VaultError as exc:
                self._audit(EventType.BACKUP_FAILED, f"Restore failed: {exc}",
                            {"name": name}, EventSeverity.WARNING)
                raise

        self._audit(EventType.BACKUP_RESTORED, f"Backup restored: {name}", {
            "name": name,
            **report.to_dict(),
        })
        return report

    def restore_archive(self, blob: bytes, name: str = "", password: Optional[str] = None) -> RestoreReport:
        """Synchronous restore of an archive already in memory."""
        if name.endswith(ENCRYPTED_SUFFIX) or BackupArchiveCipher.is_encrypted_bytes(blob):
            if not password:
                raise PasswordRequiredError("This backup is encrypted. Please provide a password.")
            try:
                blob = BackupArchiveCipher.decrypt_bytes(blob, password)
            except AuthError as exc:
                raise AuthError("Wrong password or corrupted backup.") from exc

        tmp_dir = Path(tempfile.mkdtemp(prefix="monica_restore_"))
        try:
            try:
                with zipfile.ZipFile(io.BytesIO(blob)) as zf:
                    zf.extractall(tmp_dir)
            except zipfile.BadZipFile as exc:
                raise StructuralError("Backup is not a valid zip archive") from exc

            root = find_content_root(tmp_dir)
            # Unreadable files are counted per record; only a failing store
            # or a locked session abandons the batch.
            try:
                report = self._merge_tree(root)
                self.store.save()
            except (VaultError, sqlite3.Error):
                self.store.discard()
                raise
            return report
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def _merge_tree(self, root: Path) -> RestoreReport:
        report = RestoreReport()

        categories = root / CATEGORIES_FILE
        if categories.is_file():
            try:
                self.codec.import_categories(_read_json(categories))
            except StructuralError as exc:
                logger.warning("Ignoring categories.json: %s", exc)

        report.add(self._merge_records(root / PASSWORDS_DIR, self.codec.import_password_record))
        report.add(self._merge_records(root / NOTES_DIR, self.codec.import_note_record))

        images = root / IMAGES_DIR
        if images.is_dir():
            for path in sorted(p for p in images.iterdir() if p.is_file()):
                try:
                    _, is_new = self.image_store.import_from_path(path)
                except (OSError, ValueError, AuthError, StructuralError) as exc:
                    logger.warning("Failed to restore image %s: %s", path.name, exc)
                    continue
                if is_new:
                    report.images_imported += 1
                else:
                    report.images_skipped += 1

        for csv_path in sorted(root.glob("*.csv")):
            try:
                rows = csv_format.parse_csv(csv_path.read_text(encoding="utf-8-sig"))
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Failed to read %s: %s", csv_path.name, exc)
                report.failed += 1
                continue
            if not rows or csv_format.is_password_layout(rows[0]):
                continue
            if not csv_format.is_entry_layout(rows[0]):
                logger.warning("Skipping %s: unrecognized header", csv_path.name)
                continue
            report.add(self.codec.import_entry_rows(rows[1:], skip_passwords=True))

        return report

    @staticmethod
    def _merge_records(folder: Path, merge) -> ImportResult:
        result = ImportResult()
        if not folder.is_dir():
            return result
        for path in sorted(folder.glob("*.json")):
            try:
                merge(_read_json(path), result)
            except (StructuralError, PartialImportFailure) as exc:
                logger.warning("Failed to restore %s: %s", path.name, exc)
                result.failed += 1
        return result

    # ── List / Delete ────────────────────────────────────────────────

    async def list_backups(self) -> List[str]:
        return await self.transport.list_backups()

    async def delete_backup(self, name: str) -> None:
        async with self._lock:
            await self.transport.delete(name)
        self._audit(EventType.BACKUP_DELETED, f"Backup deleted: {name}", {"name": name})

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _audit(event_type: EventType, message: str, details: dict,
               severity: EventSeverity = EventSeverity.INFO) -> None:
        get_audit_logger().log_vault_event(event_type, message, details=details, severity=severity)


def _write_json(path: Path, document) -> None:
    path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")


def _read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except OSError as exc:
        raise StructuralError(f"Cannot read {path.name}: {exc}") from exc
    except (UnicodeDecodeError, ValueError) as exc:
        raise StructuralError(f"{path.name} is not valid JSON") from exc


