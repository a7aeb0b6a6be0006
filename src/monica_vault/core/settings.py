# Core - Settings
#
# Resolves where Monica Vault keeps its files. Values come from the
# environment (optionally seeded from a .env file) with per-platform
# defaults:
#
#   MONICA_DATA_DIR         security.json, monica.db, webdav_config.json
#   MONICA_ATTACHMENTS_DIR  encrypted image attachments
#   MONICA_AUDIT_LOG_DIR    daily audit logs

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

SECURITY_CONFIG_NAME = "security.json"
DATABASE_NAME = "monica.db"
WEBDAV_CONFIG_NAME = "webdav_config.json"
ATTACHMENTS_DIR_NAME = "MonicaAttachments"


def _default_base_dir() -> Path:
    """Per-user application data root (LocalAppData on Windows)."""
    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        if local:
            return Path(local)
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".local" / "share"


@dataclass(frozen=True)
class Settings:
    """Filesystem layout for one vault installation."""

    data_dir: Path
    attachments_dir: Path
    audit_log_dir: Path

    @property
    def security_config_path(self) -> Path:
        return self.data_dir / SECURITY_CONFIG_NAME

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_NAME

    @property
    def webdav_config_path(self) -> Path:
        return self.data_dir / WEBDAV_CONFIG_NAME

    @classmethod
    def for_data_dir(cls, data_dir: Path) -> "Settings":
        """Lay everything out relative to one directory (tests, portable installs)."""
        data_dir = Path(data_dir)
        return cls(
            data_dir=data_dir,
            attachments_dir=data_dir.parent / ATTACHMENTS_DIR_NAME,
            audit_log_dir=data_dir / "audit_logs",
        )

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, loading .env first."""
        load_dotenv()
        base = _default_base_dir()
        data_dir = Path(os.environ.get("MONICA_DATA_DIR") or base / "Monica")
        attachments = Path(
            os.environ.get("MONICA_ATTACHMENTS_DIR") or data_dir.parent / ATTACHMENTS_DIR_NAME
        )
        audit = Path(os.environ.get("MONICA_AUDIT_LOG_DIR") or data_dir / "audit_logs")
        return cls(data_dir=data_dir, attachments_dir=attachments, audit_log_dir=audit)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace the singleton (for testing)."""
    global _settings
    _settings = settings
