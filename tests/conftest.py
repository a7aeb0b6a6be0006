"""
Shared pytest fixtures for the Monica Vault test suite.

Autouse fixtures below isolate tests from the user's real vault:
  - Audit logger -> temp directory  (prevents test events in the audit log)
  - Settings     -> temp directory  (prevents writes to the real data dir)
"""

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test."""
    import monica_vault.core.audit_log as audit_mod

    # Reset the singleton so the next get_audit_logger() builds a fresh
    # instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_settings(tmp_path):
    """Point the Settings singleton at a per-test data directory."""
    import monica_vault.core.settings as settings_mod

    old_settings = settings_mod._settings
    settings_mod.set_settings(settings_mod.Settings.for_data_dir(tmp_path / "Monica"))

    yield

    settings_mod._settings = old_settings


@pytest.fixture
def settings():
    from monica_vault.core import get_settings

    return get_settings()


@pytest.fixture
def session():
    """Unlocked session with a fixed 32-byte key."""
    from monica_vault.vault import VaultSession

    return VaultSession(bytes(range(32)))


@pytest.fixture
def store(tmp_path):
    from monica_vault.vault import EntryStore

    s = EntryStore(tmp_path / "entries.db")
    yield s
    s.close()
