# Backup Module - Interchange Formats and WebDAV Backup
#
# - BackupCodec: CSV / Aegis JSON / backup-archive records
# - BackupArchiveCipher: password-encrypted archives
# - ImageStore: local and companion attachment formats
# - WebDavTransport + BackupOrchestrator: remote backup and restore

from .aegis import AegisEntry, AegisExporter
from .backup_crypto import BackupArchiveCipher
from .backup_manager import BackupOptions, BackupOrchestrator, RestoreReport
from .codec import BackupCodec, ExportOption, ImportResult
from .images import CompanionImageCodec, ImageCodec, ImageStore, LocalEnvelopeImageCodec
from .webdav import WebDavConfig, WebDavConfigStore, WebDavTransport

__all__ = [
    "AegisEntry",
    "AegisExporter",
    "BackupArchiveCipher",
    "BackupCodec",
    "BackupOptions",
    "BackupOrchestrator",
    "CompanionImageCodec",
    "ExportOption",
    "ImageCodec",
    "ImageStore",
    "ImportResult",
    "LocalEnvelopeImageCodec",
    "RestoreReport",
    "WebDavConfig",
    "WebDavConfigStore",
    "WebDavTransport",
]
