"""Tests for the vault core: session key, envelope cipher, entry store and
master password lifecycle."""

import base64
import json
import threading
import time

import pytest


# ── VaultSession ────────────────────────────────────────────────────


class TestVaultSession:

    def test_locked_by_default(self):
        from monica_vault.errors import LockedVaultError
        from monica_vault.vault import VaultSession

        session = VaultSession()
        assert not session.is_unlocked
        with pytest.raises(LockedVaultError):
            with session.key():
                pass

    def test_open_and_clear(self):
        from monica_vault.vault import VaultSession

        session = VaultSession()
        session.open(b"k" * 32)
        assert session.is_unlocked
        with session.key() as key:
            assert key == b"k" * 32
        session.clear()
        assert not session.is_unlocked

    def test_generation_counts_changes(self):
        from monica_vault.vault import VaultSession

        session = VaultSession()
        assert session.generation == 0
        session.open(b"a" * 32)
        session.clear()
        session.clear()
        assert session.generation == 2

    def test_empty_key_rejected(self):
        from monica_vault.vault import VaultSession

        with pytest.raises(ValueError):
            VaultSession(b"")

    def test_clear_waits_for_reader(self):
        from monica_vault.vault import VaultSession

        session = VaultSession(b"k" * 32)
        borrowed = threading.Event()
        release = threading.Event()
        seen = []

        def reader():
            with session.key() as key:
                borrowed.set()
                release.wait(timeout=5)
                seen.append(key)

        t = threading.Thread(target=reader)
        t.start()
        borrowed.wait(timeout=5)

        clearer = threading.Thread(target=session.clear)
        clearer.start()
        time.sleep(0.05)
        # clear() is still blocked on the reader
        assert session.is_unlocked

        release.set()
        t.join(timeout=5)
        clearer.join(timeout=5)
        assert not session.is_unlocked
        assert seen == [b"k" * 32]


# ── EnvelopeCipher ──────────────────────────────────────────────────


class TestEnvelopeCipher:
    """Per-field AES-256-GCM envelope."""

    def test_roundtrip(self, session):
        from monica_vault.vault import EnvelopeCipher

        envelope = EnvelopeCipher.encrypt(session, "correct horse battery staple")
        assert EnvelopeCipher.decrypt(session, envelope) == "correct horse battery staple"

    def test_unicode_roundtrip(self, session):
        from monica_vault.vault import EnvelopeCipher

        text = "пароль 密码 🔑"
        assert EnvelopeCipher.decrypt(session, EnvelopeCipher.encrypt(session, text)) == text

    def test_fresh_nonce_per_call(self, session):
        from monica_vault.vault import EnvelopeCipher

        a = EnvelopeCipher.encrypt(session, "same")
        b = EnvelopeCipher.encrypt(session, "same")
        assert a != b
        assert base64.b64decode(a)[:12] != base64.b64decode(b)[:12]

    def test_layout_nonce_tag_ciphertext(self, session):
        from monica_vault.vault import EnvelopeCipher

        raw = base64.b64decode(EnvelopeCipher.encrypt(session, "abc"))
        assert len(raw) == 12 + 16 + 3

    def test_empty_maps_to_empty(self, session):
        from monica_vault.vault import EnvelopeCipher

        assert EnvelopeCipher.encrypt(session, "") == ""
        result = EnvelopeCipher.try_decrypt(session, "")
        assert result.ok and result.plaintext == ""

    def test_wrong_key(self, session):
        from monica_vault.vault import DecryptStatus, EnvelopeCipher, VaultSession

        envelope = EnvelopeCipher.encrypt(session, "secret")
        other = VaultSession(b"x" * 32)
        result = EnvelopeCipher.try_decrypt(other, envelope)
        assert result.status is DecryptStatus.WRONG_KEY
        assert EnvelopeCipher.decrypt(other, envelope) == ""

    @pytest.mark.parametrize("bad", ["not base64!!", "QUJD", "plain text password"])
    def test_malformed(self, session, bad):
        from monica_vault.vault import DecryptStatus, EnvelopeCipher

        assert EnvelopeCipher.try_decrypt(session, bad).status is DecryptStatus.MALFORMED

    def test_locked_session_raises(self):
        from monica_vault.errors import LockedVaultError
        from monica_vault.vault import EnvelopeCipher, VaultSession

        with pytest.raises(LockedVaultError):
            EnvelopeCipher.encrypt(VaultSession(), "x")

    def test_derive_key_is_deterministic(self):
        from monica_vault.vault import EnvelopeCipher

        salt = b"s" * 16
        k1 = EnvelopeCipher.derive_key("pw", salt)
        assert k1 == EnvelopeCipher.derive_key("pw", salt)
        assert len(k1) == 32
        assert k1 != EnvelopeCipher.derive_key("pw2", salt)

    def test_derive_key_matches_pbkdf2_sha256(self):
        import hashlib

        from monica_vault.vault import EnvelopeCipher

        salt = bytes(range(16))
        expected = hashlib.pbkdf2_hmac("sha256", b"correct horse", salt, 100_000, 32)
        assert EnvelopeCipher.derive_key("correct horse", salt) == expected

    def test_looks_encrypted(self, session):
        from monica_vault.vault import EnvelopeCipher, looks_encrypted

        assert looks_encrypted(EnvelopeCipher.encrypt(session, "x"))
        assert not looks_encrypted("hunter2")
        assert not looks_encrypted("")
        assert not looks_encrypted("this is a long plaintext password!!")


# ── Models ──────────────────────────────────────────────────────────


class TestModels:

    def test_entry_kind_parse(self):
        from monica_vault.vault import EntryKind

        assert EntryKind.parse("password") is EntryKind.PASSWORD
        assert EntryKind.parse(" BANK_CARD ") is EntryKind.BANK_CARD
        assert EntryKind.parse("SOMETHING_ELSE") is EntryKind.NOTE

    def test_dedup_key(self):
        from monica_vault.vault import EntryKind, VaultEntry

        p = VaultEntry(kind=EntryKind.PASSWORD, title="Mail", username="me")
        assert p.dedup_key == (EntryKind.PASSWORD, "Mail", "me")
        n = VaultEntry(kind=EntryKind.NOTE, title="Mail", username="ignored")
        assert n.dedup_key == (EntryKind.NOTE, "Mail", "")

    def test_totp_data_camel_case_json(self):
        from monica_vault.vault import TotpData

        data = TotpData(secret="ABC", issuer="GitHub", account_name="me")
        doc = json.loads(data.to_json())
        assert doc["accountName"] == "me"
        assert doc["otpType"] == "TOTP"

    def test_totp_data_accepts_pascal_case(self):
        from monica_vault.vault import TotpData

        data = TotpData.from_json('{"Secret": "ABC", "Digits": 8, "AccountName": "me"}')
        assert data.secret == "ABC"
        assert data.digits == 8
        assert data.account_name == "me"

    def test_bad_json_gives_defaults(self):
        from monica_vault.vault import TotpData

        data = TotpData.from_json("{not json")
        assert data.secret == ""
        assert data.period == 30

    def test_millis_roundtrip(self):
        from monica_vault.vault.models import from_millis, to_millis

        assert to_millis(from_millis(1700000000123)) == 1700000000123
        assert from_millis("garbage") is not None


# ── EntryStore ──────────────────────────────────────────────────────


class TestEntryStore:

    def test_add_assigns_id(self, store):
        from monica_vault.vault import EntryKind, VaultEntry

        entry = store.add(VaultEntry(kind=EntryKind.NOTE, title="n"))
        assert entry.id is not None
        assert store.get(entry.id).title == "n"

    def test_entries_filtered_by_kind(self, store):
        from monica_vault.vault import EntryKind, VaultEntry

        store.add(VaultEntry(kind=EntryKind.NOTE, title="a"))
        store.add(VaultEntry(kind=EntryKind.PASSWORD, title="b"))
        assert [e.title for e in store.entries(EntryKind.PASSWORD)] == ["b"]
        assert store.count() == 2

    def test_update_and_remove(self, store):
        from monica_vault.vault import EntryKind, VaultEntry

        entry = store.add(VaultEntry(kind=EntryKind.NOTE, title="old"))
        entry.title = "new"
        store.update(entry)
        assert store.get(entry.id).title == "new"
        assert store.remove(entry.id)
        assert not store.remove(entry.id)
        assert store.get(entry.id) is None

    def test_has_duplicate(self, store):
        from monica_vault.vault import EntryKind, VaultEntry

        store.add(VaultEntry(kind=EntryKind.PASSWORD, title="Mail", username="a"))
        assert store.has_duplicate(VaultEntry(kind=EntryKind.PASSWORD, title="Mail", username="a"))
        assert not store.has_duplicate(VaultEntry(kind=EntryKind.PASSWORD, title="Mail", username="b"))
        assert not store.has_duplicate(VaultEntry(kind=EntryKind.NOTE, title="Mail"))

    def test_discard_rolls_back(self, store):
        from monica_vault.vault import EntryKind, VaultEntry

        store.add(VaultEntry(kind=EntryKind.NOTE, title="kept"))
        store.save()
        store.add(VaultEntry(kind=EntryKind.NOTE, title="dropped"))
        store.discard()
        assert [e.title for e in store.entries()] == ["kept"]

    def test_context_manager_commits(self, tmp_path):
        from monica_vault.vault import EntryKind, EntryStore, VaultEntry

        with EntryStore(tmp_path / "x.db") as s:
            s.add(VaultEntry(kind=EntryKind.NOTE, title="persisted"))
        with EntryStore(tmp_path / "x.db") as s:
            assert [e.title for e in s.entries()] == ["persisted"]

    def test_context_manager_discards_on_error(self, tmp_path):
        from monica_vault.vault import EntryKind, EntryStore, VaultEntry

        with pytest.raises(RuntimeError):
            with EntryStore(tmp_path / "x.db") as s:
                s.add(VaultEntry(kind=EntryKind.NOTE, title="lost"))
                raise RuntimeError("boom")
        with EntryStore(tmp_path / "x.db") as s:
            assert s.count() == 0

    def test_ensure_category(self, store):
        from monica_vault.vault import Category

        store.add_category(Category(name="Work", sort_order=4))
        assert store.ensure_category("Work").sort_order == 4
        created = store.ensure_category("Home")
        assert created.sort_order == 5
        assert store.find_category("Home").id == created.id


# ── VaultKeyManager ─────────────────────────────────────────────────


class TestVaultKeyManager:

    def test_fresh_vault(self, settings):
        from monica_vault.vault import VaultKeyManager

        manager = VaultKeyManager(settings)
        assert not manager.is_master_password_set()
        assert not manager.unlock("anything")

    def test_lock_unlock_scenario(self, settings):
        from monica_vault.errors import LockedVaultError
        from monica_vault.vault import EnvelopeCipher, VaultKeyManager

        manager = VaultKeyManager(settings)
        manager.set_master_password("correct horse")
        assert manager.unlock("correct horse")
        envelope = EnvelopeCipher.encrypt(manager.session, "secret")

        manager.lock()
        assert not manager.is_unlocked
        with pytest.raises(LockedVaultError):
            EnvelopeCipher.decrypt(manager.session, envelope)

        assert not manager.unlock("wrong horse")
        assert not manager.is_unlocked

        assert manager.unlock("correct horse")
        assert EnvelopeCipher.decrypt(manager.session, envelope) == "secret"

    @pytest.mark.parametrize("password", [None, ""])
    def test_unlock_rejects_missing_password(self, settings, password):
        from monica_vault.vault import VaultKeyManager

        manager = VaultKeyManager(settings)
        manager.set_master_password("pw")
        assert not manager.unlock(password)
        assert not manager.is_unlocked

    def test_key_survives_new_manager(self, settings):
        from monica_vault.vault import EnvelopeCipher, VaultKeyManager

        first = VaultKeyManager(settings)
        first.set_master_password("pw")
        first.unlock("pw")
        envelope = EnvelopeCipher.encrypt(first.session, "data")

        second = VaultKeyManager(settings)
        assert second.unlock("pw")
        assert EnvelopeCipher.decrypt(second.session, envelope) == "data"

    def test_config_layout(self, settings):
        from monica_vault.vault import VaultKeyManager

        manager = VaultKeyManager(settings)
        manager.set_master_password("pw")
        config = json.loads(settings.security_config_path.read_text())
        assert set(config) == {"passwordHash", "salt"}
        assert config["passwordHash"] == config["passwordHash"].upper()
        assert len(base64.b64decode(config["salt"])) == 16

    def test_accepts_pascal_case_lowercase_hex_config(self, settings):
        from monica_vault.vault import EnvelopeCipher, VaultKeyManager

        salt = b"\x01" * 16
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        settings.security_config_path.write_text(json.dumps({
            "PasswordHash": EnvelopeCipher.derive_key("pw", salt).hex(),
            "Salt": base64.b64encode(salt).decode(),
        }))
        assert VaultKeyManager(settings).unlock("pw")

    def test_empty_master_password_rejected(self, settings):
        from monica_vault.vault import VaultKeyManager

        with pytest.raises(ValueError):
            VaultKeyManager(settings).set_master_password("")

    def test_corrupt_config_does_not_raise(self, settings):
        from monica_vault.vault import VaultKeyManager

        settings.data_dir.mkdir(parents=True, exist_ok=True)
        settings.security_config_path.write_text("{broken")
        assert not VaultKeyManager(settings).unlock("pw")

    def test_security_question(self, settings):
        from monica_vault.vault import VaultKeyManager

        manager = VaultKeyManager(settings)
        assert not manager.set_security_question("Pet?", "Rex")
        manager.set_master_password("pw")
        assert manager.set_security_question("Pet?", "Rex")
        assert manager.is_security_question_set()
        assert manager.get_security_question() == "Pet?"
        assert manager.validate_security_answer("  rEx ")
        assert not manager.validate_security_answer("Max")

    def test_reset_wipes_everything(self, settings):
        from monica_vault.vault import EntryKind, EntryStore, VaultEntry, VaultKeyManager

        manager = VaultKeyManager(settings)
        manager.set_master_password("pw")
        manager.set_security_question("Pet?", "Rex")
        manager.unlock("pw")
        with EntryStore(settings.database_path) as s:
            s.add(VaultEntry(kind=EntryKind.NOTE, title="n"))
        settings.attachments_dir.mkdir(parents=True)
        (settings.attachments_dir / "img.enc").write_text("x")

        assert not manager.reset_with_security_answer("Max")
        assert manager.is_master_password_set()

        assert manager.reset_with_security_answer("rex")
        assert not manager.is_master_password_set()
        assert not manager.is_unlocked
        assert not settings.database_path.exists()
        assert not settings.attachments_dir.exists()

    def test_audit_events_written(self, settings, tmp_path):
        from monica_vault.vault import VaultKeyManager

        manager = VaultKeyManager(settings)
        manager.set_master_password("pw")
        manager.unlock("bad")
        manager.unlock("pw")

        logs = list((tmp_path / "audit_logs").glob("audit_*.log"))
        assert logs
        text = logs[0].read_text()
        assert "vault.created" in text
        assert "vault.unlock.failed" in text
        assert "vault.unlocked" in text
        assert '"pw"' not in text
