# Monica Vault - Command Line Entry Point
#
# Every command that touches entries prompts for the master password,
# unlocks a session for the duration of the command and locks it again
# on exit.

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

from . import __version__
from .backup import (
    BackupCodec,
    BackupOrchestrator,
    ExportOption,
    ImageStore,
    WebDavConfig,
    WebDavConfigStore,
    WebDavTransport,
)
from .core import EventSeverity, EventType, get_audit_logger, get_settings
from .errors import PasswordRequiredError, VaultError
from .otp import OtpSpec, remaining_seconds
from .vault import EntryKind, EntryStore, TotpData, VaultKeyManager


class CliError(Exception):
    """Printed to stderr; exit status 1."""


def _prompt_new_password(label: str) -> str:
    first = getpass.getpass(f"New {label}: ")
    if not first:
        raise CliError(f"{label.capitalize()} must not be empty")
    if getpass.getpass(f"Repeat {label}: ") != first:
        raise CliError("Passwords do not match")
    return first


def _unlock(manager: VaultKeyManager) -> None:
    if not manager.is_master_password_set():
        raise CliError("No vault yet; run 'monica-vault init' first")
    if not manager.unlock(getpass.getpass("Master password: ")):
        raise CliError("Incorrect master password")


def _webdav_transport(settings) -> WebDavTransport:
    config = WebDavConfigStore(settings.webdav_config_path).load()
    if config is None:
        raise CliError("WebDAV is not configured; run 'monica-vault webdav URL USER'")
    return WebDavTransport(config)


# ── Commands ─────────────────────────────────────────────────────────


def cmd_init(args, manager, settings):
    if manager.is_master_password_set():
        raise CliError("A master password is already set")
    manager.set_master_password(_prompt_new_password("master password"))
    if args.question:
        manager.set_security_question(args.question, getpass.getpass("Security answer: "))
    print(f"Vault created in {settings.data_dir}")


def cmd_status(args, manager, settings):
    print(f"Data directory:    {settings.data_dir}")
    print(f"Master password:   {'set' if manager.is_master_password_set() else 'not set'}")
    question = manager.get_security_question()
    print(f"Security question: {question or 'not set'}")


def cmd_otp(args, manager, settings):
    _unlock(manager)
    with EntryStore(settings.database_path) as store:
        codec = BackupCodec(store, manager.session)
        for entry in store.entries(EntryKind.TOTP):
            data = TotpData.from_json(codec.open_payload(entry))
            try:
                spec = OtpSpec(
                    secret=data.secret,
                    algorithm=data.algorithm,
                    digits=data.digits,
                    period=data.period,
                    otp_type=data.otp_type,
                    counter=data.counter,
                    pin=data.pin,
                )
            except ValueError as exc:
                print(f"{entry.title:<32} invalid: {exc}")
                continue
            left = f"{remaining_seconds(spec.period)}s" if spec.otp_type.is_time_based else ""
            print(f"{entry.title:<32} {spec.code():>8}  {left}")


def cmd_export(args, manager, settings):
    _unlock(manager)
    with EntryStore(settings.database_path) as store:
        codec = BackupCodec(store, manager.session)
        if args.format == "aegis":
            password = _prompt_new_password("export password") if args.encrypt else None
            text = codec.export_aegis(password)
        else:
            text = codec.export_csv(ExportOption(args.option))
    Path(args.output).write_text(text, encoding="utf-8")
    print(f"Exported to {args.output}")


def cmd_import(args, manager, settings):
    _unlock(manager)
    text = Path(args.file).read_text(encoding="utf-8-sig")
    with EntryStore(settings.database_path) as store:
        codec = BackupCodec(store, manager.session)
        try:
            result = codec.import_text(text)
        except PasswordRequiredError:
            result = codec.import_text(text, getpass.getpass("File password: "))
    print(f"Imported {result.imported}, skipped {result.skipped}, failed {result.failed}")


def cmd_webdav(args, manager, settings):
    config = WebDavConfig(args.url, args.username, getpass.getpass("WebDAV password: "))

    async def check():
        async with WebDavTransport(config) as dav:
            return await dav.test_connection()

    if not asyncio.run(check()):
        raise CliError(f"Cannot reach {config.server_url}")
    WebDavConfigStore(settings.webdav_config_path).save(config)
    print("WebDAV configuration saved")


def _run_orchestrated(manager, settings, action):
    """Open store, attachments and transport, then await ``action(orchestrator)``."""

    async def run():
        with EntryStore(settings.database_path) as store:
            images = ImageStore(settings.attachments_dir, manager.session)
            async with _webdav_transport(settings) as dav:
                return await action(BackupOrchestrator(store, manager.session, images, dav))

    return asyncio.run(run())


def cmd_backup(args, manager, settings):
    _unlock(manager)
    password = _prompt_new_password("backup password") if args.encrypt else None
    name = _run_orchestrated(manager, settings, lambda o: o.create_backup(password))
    print(f"Uploaded {name}")


def cmd_restore(args, manager, settings):
    _unlock(manager)
    password = None
    if args.name.endswith(".enc.zip"):
        password = getpass.getpass("Backup password: ")
    report = _run_orchestrated(
        manager, settings, lambda o: o.restore_backup(args.name, password)
    )
    print(
        f"Imported {report.imported}, skipped {report.skipped}, failed {report.failed}; "
        f"images {report.images_imported} new, {report.images_skipped} kept"
    )


def cmd_list_backups(args, manager, settings):
    for name in _run_orchestrated(manager, settings, lambda o: o.list_backups()):
        print(name)


def cmd_delete_backup(args, manager, settings):
    _run_orchestrated(manager, settings, lambda o: o.delete_backup(args.name))
    print(f"Deleted {args.name}")


def cmd_reset(args, manager, settings):
    if not manager.is_security_question_set():
        raise CliError("No security question is set")
    print(manager.get_security_question())
    if not manager.reset_with_security_answer(getpass.getpass("Answer: ")):
        raise CliError("Incorrect answer")
    print("Vault wiped; run 'monica-vault init' to start over")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="monica-vault",
        description="Monica Vault - local password vault with Aegis, CSV and WebDAV backups",
    )
    parser.add_argument("--version", action="version", version=f"Monica Vault v{__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create the vault and set the master password")
    p.add_argument("--question", help="Security question for wipe-and-reset")
    p.set_defaults(func=cmd_init)

    sub.add_parser("status", help="Show vault location and setup").set_defaults(func=cmd_status)
    sub.add_parser("otp", help="Print current OTP codes").set_defaults(func=cmd_otp)

    p = sub.add_parser("export", help="Export entries to CSV or Aegis JSON")
    p.add_argument("output")
    p.add_argument("--format", choices=("csv", "aegis"), default="csv")
    p.add_argument("--option", choices=[o.value for o in ExportOption], default="all")
    p.add_argument(
        "--encrypt",
        action="store_true",
        help="Password-protect an Aegis export (scrypt N=32768, r=8; takes tens of seconds)",
    )
    p.set_defaults(func=cmd_export)

    p = sub.add_parser(
        "import",
        help="Import a CSV or Aegis JSON file (encrypted Aegis files take tens of seconds to unlock)",
    )
    p.add_argument("file")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("webdav", help="Configure the WebDAV server")
    p.add_argument("url")
    p.add_argument("username")
    p.set_defaults(func=cmd_webdav)

    p = sub.add_parser("backup", help="Upload a backup to WebDAV")
    p.add_argument("--encrypt", action="store_true", help="Encrypt the archive with a password")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("restore", help="Merge a WebDAV backup into the vault")
    p.add_argument("name")
    p.set_defaults(func=cmd_restore)

    sub.add_parser("list-backups", help="List backups on WebDAV").set_defaults(func=cmd_list_backups)

    p = sub.add_parser("delete-backup", help="Delete a backup from WebDAV")
    p.add_argument("name")
    p.set_defaults(func=cmd_delete_backup)

    sub.add_parser("reset", help="Wipe the vault after answering the security question").set_defaults(
        func=cmd_reset
    )
    return parser


def main(argv=None):
    """Main entry point for the monica-vault command."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    manager = VaultKeyManager(settings)
    try:
        args.func(args, manager, settings)
    except (CliError, VaultError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        get_audit_logger().log_vault_event(
            EventType.VAULT_ERROR,
            f"Command '{args.command}' failed",
            details={"error": type(e).__name__},
            severity=EventSeverity.WARNING,
        )
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nCancelled")
        sys.exit(130)
    finally:
        manager.lock()


if __name__ == "__main__":
    main()
