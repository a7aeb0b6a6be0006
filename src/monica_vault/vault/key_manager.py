# Vault - Master Password Lifecycle
#
# security.json holds the PBKDF2 verification hash and its salt, plus an
# optional security question with its own salt+hash pair. The derived
# PBKDF2 output doubles as the session key, so unlock() both verifies the
# password and opens the VaultSession.
#
# Recovery: a correct security answer proves identity but cannot recover
# the session key (nothing is wrapped under the answer). The only reset
# path is therefore a full wipe.

import base64
import binascii
import hmac
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from ..core import EventSeverity, EventType, Settings, get_audit_logger, get_settings
from .encryption import EnvelopeCipher
from .session import VaultSession

logger = logging.getLogger(__name__)

# camelCase on write; PascalCase accepted on read for configs written by
# the desktop client.
_CONFIG_KEYS = (
    "passwordHash",
    "salt",
    "securityQuestion",
    "securityAnswerHash",
    "securityAnswerSalt",
)


def normalize_answer(answer: str) -> str:
    return answer.lower().strip()


class VaultKeyManager:
    """
    Owns the master password, the security question and the session key.

    Security:
    - Master password never stored (PBKDF2 hash + salt only)
    - Hash compared in constant time, case-insensitively on hex
    - Every lifecycle event is written to the audit log (never secrets)

    Args:
        settings: Filesystem layout (default: process settings)
        session: Session handle to open on unlock (default: a new one)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[VaultSession] = None,
    ):
        self.settings = settings or get_settings()
        self.session = session or VaultSession()
        self.config_path: Path = self.settings.security_config_path
        self.audit = get_audit_logger()

    # ── Config file ─────────────────────────────────────────────────

    def _read_config(self) -> Dict[str, Any]:
        """Load security.json. Raises OSError / ValueError on bad files."""
        raw = json.loads(self.config_path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("security config is not a JSON object")
        config = {}
        for key in _CONFIG_KEYS:
            pascal = key[0].upper() + key[1:]
            value = raw.get(key, raw.get(pascal))
            if value is not None:
                config[key] = value
        return config

    def _write_config(self, config: Dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.config_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(config), encoding="utf-8")
        os.replace(tmp, self.config_path)

    @staticmethod
    def _hash_hex(secret: str, salt: bytes) -> str:
        return EnvelopeCipher.derive_key(secret, salt).hex().upper()

    @staticmethod
    def _hex_equals(computed: str, stored: str) -> bool:
        return hmac.compare_digest(computed.upper(), (stored or "").upper())

    # ── Master password ─────────────────────────────────────────────

    def is_master_password_set(self) -> bool:
        return self.config_path.exists()

    @property
    def is_unlocked(self) -> bool:
        return self.session.is_unlocked

    def set_master_password(self, password: str) -> None:
        """
        Create (or replace) the master password.

        Writes a fresh salt and verification hash. The session is not
        touched; call unlock() afterwards.

        Raises:
            ValueError: Empty password.
        """
        if not password:
            raise ValueError("Master password must not be empty")

        salt = EnvelopeCipher.generate_salt()
        config = {
            "passwordHash": self._hash_hex(password, salt),
            "salt": base64.b64encode(salt).decode("ascii"),
        }
        self._write_config(config)

        self.audit.log_vault_event(
            EventType.VAULT_CREATED,
            "Master password set",
            details={"config_path": str(self.config_path)},
        )

    def unlock(self, password: str) -> bool:
        """
        Verify ``password`` and open the session with the derived key.

        Never raises: a missing or unreadable config counts as failure.
        """
        if not password or not self.is_master_password_set():
            return False

        try:
            config = self._read_config()
            salt = base64.b64decode(config.get("salt", ""), validate=True)
            derived = EnvelopeCipher.derive_key(password, salt)
        except (OSError, ValueError, binascii.Error) as exc:
            logger.warning("Could not read security config: %s", exc)
            self._log_unlock_failed("config unreadable")
            return False

        if not self._hex_equals(derived.hex(), config.get("passwordHash", "")):
            self._log_unlock_failed("wrong password")
            return False

        self.session.open(derived)
        self.audit.log_vault_event(EventType.VAULT_UNLOCKED, "Vault unlocked")
        return True

    def _log_unlock_failed(self, reason: str) -> None:
        self.audit.log_vault_event(
            EventType.VAULT_UNLOCK_FAILED,
            "Unlock failed",
            details={"reason": reason},
            severity=EventSeverity.WARNING,
        )

    def lock(self) -> None:
        """Clear the session key (waits for in-flight crypto calls)."""
        was_unlocked = self.session.is_unlocked
        self.session.clear()
        if was_unlocked:
            self.audit.log_vault_event(EventType.VAULT_LOCKED, "Vault locked")

    # ── Security question ───────────────────────────────────────────

    def is_security_question_set(self) -> bool:
        try:
            config = self._read_config()
        except (OSError, ValueError):
            return False
        return bool(config.get("securityQuestion")) and bool(config.get("securityAnswerHash"))

    def set_security_question(self, question: str, answer: str) -> bool:
        """
        Store a recovery question and the salted hash of its answer.

        Returns:
            False if no master password has been set yet.
        """
        if not self.is_master_password_set():
            return False

        config = self._read_config()
        salt = EnvelopeCipher.generate_salt()
        config["securityQuestion"] = question
        config["securityAnswerHash"] = self._hash_hex(normalize_answer(answer), salt)
        config["securityAnswerSalt"] = base64.b64encode(salt).decode("ascii")
        self._write_config(config)

        self.audit.log_vault_event(EventType.SECURITY_QUESTION_SET, "Security question set")
        return True

    def get_security_question(self) -> Optional[str]:
        try:
            return self._read_config().get("securityQuestion")
        except (OSError, ValueError):
            return None

    def validate_security_answer(self, answer: str) -> bool:
        try:
            config = self._read_config()
            stored = config.get("securityAnswerHash")
            salt_b64 = config.get("securityAnswerSalt")
            if not stored or not salt_b64:
                return False
            salt = base64.b64decode(salt_b64, validate=True)
        except (OSError, ValueError, binascii.Error):
            return False

        ok = self._hex_equals(self._hash_hex(normalize_answer(answer), salt), stored)
        if not ok:
            self.audit.log_vault_event(
                EventType.SECURITY_ANSWER_FAILED,
                "Security answer rejected",
                severity=EventSeverity.WARNING,
            )
        return ok

    def reset_with_security_answer(self, answer: str) -> bool:
        """
        Wipe-only recovery: on a correct answer, erase everything.

        The old data stays unreadable; the caller sets a new master
        password afterwards.
        """
        if not self.validate_security_answer(answer):
            return False
        self.clear_all_data()
        return True

    # ── Wipe ────────────────────────────────────────────────────────

    def clear_all_data(self) -> None:
        """
        Delete the security config, the entry store and all attachments,
        then lock.

        The entry store must be closed by its owner first.

        Raises:
            OSError: Propagated from the filesystem.
        """
        if self.config_path.exists():
            self.config_path.unlink()

        db_path = self.settings.database_path
        for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
            if path.exists():
                path.unlink()

        if self.settings.attachments_dir.exists():
            shutil.rmtree(self.settings.attachments_dir)

        self.session.clear()
        self.audit.log_vault_event(
            EventType.VAULT_WIPED,
            "All vault data erased",
            severity=EventSeverity.ALERT,
        )
