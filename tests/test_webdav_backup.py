"""Tests for the WebDAV transport and the backup orchestrator.

All HTTP goes to an in-memory WebDAV server behind httpx.MockTransport;
no network access required.
"""

import base64
import io
import json
import zipfile
from datetime import datetime
from urllib.parse import quote, unquote

import httpx
import pytest

SERVER = "https://dav.example.com/dav"
ROOT_PATH = "/dav"
COLLECTION_PATH = "/dav/Monica_Backups"


class FakeDavServer:
    """Just enough WebDAV for the backup collection."""

    def __init__(self, username="user", password="secret"):
        token = base64.b64encode(f"{username}:{password}".encode()).decode()
        self.expected_auth = f"Basic {token}"
        self.files = {}
        self.collection = False
        self.requests = []
        self.fail = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != self.expected_auth:
            return httpx.Response(401)
        if request.method in self.fail:
            return httpx.Response(self.fail[request.method])

        path = unquote(request.url.path).rstrip("/")
        name = path.rsplit("/", 1)[-1]

        if request.method == "PROPFIND":
            if path == ROOT_PATH:
                return httpx.Response(207, text=self._multistatus([]))
            if path == COLLECTION_PATH:
                if not self.collection:
                    return httpx.Response(404)
                return httpx.Response(207, text=self._multistatus(sorted(self.files)))
            return httpx.Response(404)
        if request.method == "MKCOL":
            if self.collection:
                return httpx.Response(405)
            self.collection = True
            return httpx.Response(201)
        if request.method == "PUT":
            if not self.collection:
                return httpx.Response(409)
            self.files[name] = request.content
            return httpx.Response(201)
        if request.method == "GET":
            if name not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, content=self.files[name])
        if request.method == "DELETE":
            if self.files.pop(name, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        return httpx.Response(405)

    @staticmethod
    def _multistatus(names):
        responses = [f"<d:response><d:href>{COLLECTION_PATH}/</d:href></d:response>"]
        responses += [
            f"<d:response><d:href>{COLLECTION_PATH}/{quote(n)}</d:href></d:response>"
            for n in names
        ]
        return '<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">' + "".join(responses) + "</d:multistatus>"


@pytest.fixture
def dav_server():
    return FakeDavServer()


@pytest.fixture
def make_transport(dav_server):
    from monica_vault.backup import WebDavConfig, WebDavTransport

    def make(password="secret", handler=None):
        config = WebDavConfig(SERVER + "/", "user", password)
        return WebDavTransport(config, transport=httpx.MockTransport(handler or dav_server))

    return make


def _add(store, session, kind, title, plaintext, **fields):
    from monica_vault.vault import EnvelopeCipher, VaultEntry

    return store.add(VaultEntry(kind=kind, title=title,
                                payload=EnvelopeCipher.encrypt(session, plaintext), **fields))


def _vault(tmp_path, name, key):
    from monica_vault.backup import ImageStore
    from monica_vault.vault import EntryStore, VaultSession

    session = VaultSession(key)
    store = EntryStore(tmp_path / name / "monica.db")
    images = ImageStore(tmp_path / name / "attachments", session)
    return store, session, images


# ── Multistatus Parsing ─────────────────────────────────────────────


class TestMultistatus:

    def test_prefixed_namespace(self):
        from monica_vault.backup.webdav import parse_multistatus

        xml = (
            '<D:multistatus xmlns:D="DAV:">'
            "<D:response><D:href>/dav/Monica_Backups/</D:href></D:response>"
            "<D:response><D:href>/dav/Monica_Backups/monica_backup_20240101_000000.zip</D:href></D:response>"
            "<D:response><D:href>/dav/Monica_Backups/monica_backup_20250101_000000.enc.zip</D:href></D:response>"
            "<D:response><D:href>/dav/Monica_Backups/readme.txt</D:href></D:response>"
            "</D:multistatus>"
        )
        assert parse_multistatus(xml) == [
            "monica_backup_20250101_000000.enc.zip",
            "monica_backup_20240101_000000.zip",
        ]

    def test_default_namespace_and_url_encoding(self):
        from monica_vault.backup.webdav import parse_multistatus

        xml = (
            '<multistatus xmlns="DAV:"><response>'
            "<href>https://h/dav/Monica_Backups/my%20backup.zip</href>"
            "</response></multistatus>"
        )
        assert parse_multistatus(xml) == ["my backup.zip"]

    def test_no_namespace(self):
        from monica_vault.backup.webdav import parse_multistatus

        xml = "<multistatus><response><href>/x/a.zip</href></response></multistatus>"
        assert parse_multistatus(xml) == ["a.zip"]


# ── WebDavTransport ─────────────────────────────────────────────────


class TestWebDavTransport:

    @pytest.mark.asyncio
    async def test_connection_ok(self, make_transport, dav_server):
        async with make_transport() as dav:
            assert await dav.test_connection()
        request = dav_server.requests[0]
        assert request.method == "PROPFIND"
        assert request.headers["Depth"] == "0"
        assert request.headers["User-Agent"] == "Monica-Windows/1.0"

    @pytest.mark.asyncio
    async def test_connection_bad_credentials(self, make_transport):
        async with make_transport(password="wrong") as dav:
            assert not await dav.test_connection()

    @pytest.mark.asyncio
    async def test_connection_network_error(self, make_transport):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_transport(handler=refuse) as dav:
            assert not await dav.test_connection()

    @pytest.mark.asyncio
    async def test_missing_collection_lists_empty(self, make_transport):
        async with make_transport() as dav:
            assert await dav.list_backups() == []

    @pytest.mark.asyncio
    async def test_upload_creates_collection(self, make_transport, dav_server):
        async with make_transport() as dav:
            await dav.upload("monica_backup_20250101_000000.zip", b"zip")
            await dav.upload("monica_backup_20250102_000000.zip", b"zip2")
            assert await dav.list_backups() == [
                "monica_backup_20250102_000000.zip",
                "monica_backup_20250101_000000.zip",
            ]
            assert await dav.download("monica_backup_20250101_000000.zip") == b"zip"
        assert dav_server.collection
        list_request = [r for r in dav_server.requests if r.method == "PROPFIND"][-1]
        assert list_request.headers["Depth"] == "1"

    @pytest.mark.asyncio
    async def test_delete(self, make_transport, dav_server):
        async with make_transport() as dav:
            await dav.upload("a.zip", b"x")
            await dav.delete("a.zip")
            assert await dav.list_backups() == []

    @pytest.mark.asyncio
    async def test_put_failure_raises(self, make_transport, dav_server):
        from monica_vault.errors import TransportError

        dav_server.fail["PUT"] = 507
        async with make_transport() as dav:
            with pytest.raises(TransportError) as exc_info:
                await dav.upload("a.zip", b"x")
        assert exc_info.value.status_code == 507

    @pytest.mark.asyncio
    async def test_download_missing_raises(self, make_transport):
        from monica_vault.errors import TransportError

        async with make_transport() as dav:
            with pytest.raises(TransportError):
                await dav.download("missing.zip")

    @pytest.mark.asyncio
    async def test_network_error_raises(self, make_transport):
        from monica_vault.errors import TransportError

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_transport(handler=refuse) as dav:
            with pytest.raises(TransportError):
                await dav.list_backups()

    @pytest.mark.asyncio
    async def test_mkcol_failure_ignored(self, make_transport, dav_server):
        dav_server.fail["MKCOL"] = 403
        dav_server.collection = True
        async with make_transport() as dav:
            await dav.ensure_collection()

    def test_rejects_path_in_name(self, make_transport):
        dav = make_transport()
        with pytest.raises(ValueError):
            dav.file_url("../etc/passwd")


class TestWebDavConfigStore:

    def test_save_and_load(self, tmp_path):
        from monica_vault.backup import WebDavConfig, WebDavConfigStore

        store = WebDavConfigStore(tmp_path / "webdav_config.json")
        assert store.load() is None
        store.save(WebDavConfig("https://h/dav/", "u", "p"))
        loaded = store.load()
        assert (loaded.server_url, loaded.username, loaded.password) == ("https://h/dav", "u", "p")
        assert set(json.loads((tmp_path / "webdav_config.json").read_text())) == {
            "serverUrl", "username", "password",
        }

    def test_pascal_case_accepted(self, tmp_path):
        from monica_vault.backup import WebDavConfigStore

        path = tmp_path / "webdav_config.json"
        path.write_text(json.dumps({"ServerUrl": "https://h", "Username": "u", "Password": "p"}))
        assert WebDavConfigStore(path).load().username == "u"

    def test_corrupt_file_ignored(self, tmp_path):
        from monica_vault.backup import WebDavConfigStore

        path = tmp_path / "webdav_config.json"
        path.write_text("{")
        assert WebDavConfigStore(path).load() is None


# ── BackupOrchestrator ──────────────────────────────────────────────


class TestBackupOrchestrator:

    def _seed(self, store, session):
        from monica_vault.vault import EntryKind

        _add(store, session, EntryKind.PASSWORD, "Mail", "pw-one", username="alice")
        _add(store, session, EntryKind.PASSWORD, "Bank", "pw-two", username="alice",
             website="https://bank.example")
        _add(store, session, EntryKind.NOTE, "Diary", '{"content": "dear diary"}')
        store.save()

    @pytest.mark.asyncio
    async def test_encrypted_backup_restore_scenario(self, tmp_path, make_transport):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.errors import AuthError, PasswordRequiredError
        from monica_vault.vault import EntryKind, EnvelopeCipher

        src_store, src_session, src_images = _vault(tmp_path, "src", b"a" * 32)
        self._seed(src_store, src_session)

        async with make_transport() as dav:
            source = BackupOrchestrator(src_store, src_session, src_images, dav)
            name = await source.create_backup(
                encrypt_password="backup-pw", now=datetime(2025, 1, 2, 3, 4, 5)
            )
            assert name == "monica_backup_20250102_030405.enc.zip"
            assert await source.list_backups() == [name]

            dst_store, dst_session, dst_images = _vault(tmp_path, "dst", b"b" * 32)
            target = BackupOrchestrator(dst_store, dst_session, dst_images, dav)

            with pytest.raises(PasswordRequiredError):
                await target.restore_backup(name)
            with pytest.raises(AuthError):
                await target.restore_backup(name, "wrong")
            assert dst_store.count() == 0

            first = await target.restore_backup(name, "backup-pw")
            assert (first.imported, first.skipped, first.failed) == (3, 0, 0)

            second = await target.restore_backup(name, "backup-pw")
            assert (second.imported, second.skipped, second.failed) == (0, 3, 0)

        passwords = {e.title: e for e in dst_store.entries(EntryKind.PASSWORD)}
        assert EnvelopeCipher.decrypt(dst_session, passwords["Mail"].payload) == "pw-one"
        assert passwords["Bank"].website == "https://bank.example"
        [note] = dst_store.entries(EntryKind.NOTE)
        assert EnvelopeCipher.decrypt(dst_session, note.payload) == '{"content": "dear diary"}'

        src_store.close()
        dst_store.close()

    @pytest.mark.asyncio
    async def test_archive_layout(self, tmp_path, make_transport, dav_server):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.vault import EntryKind

        store, session, images = _vault(tmp_path, "src", b"a" * 32)
        self._seed(store, session)
        store.ensure_category("Work")

        async with make_transport() as dav:
            name = await BackupOrchestrator(store, session, images, dav).create_backup(
                now=datetime(2025, 1, 2, 3, 4, 5)
            )
        assert name == "monica_backup_20250102_030405.zip"

        with zipfile.ZipFile(io.BytesIO(dav_server.files[name])) as zf:
            names = zf.namelist()
            assert all("\\" not in n for n in names)
            mail = store.entries(EntryKind.PASSWORD)[0]
            assert any(n.startswith(f"passwords/password_{mail.id}_") for n in names)
            assert sum(n.startswith("notes/note_") for n in names) == 1
            assert "Monica_20250102_030405_password.csv" in names
            assert "Monica_20250102_030405_totp.csv" in names
            assert "Monica_20250102_030405_cards_docs.csv" in names
            categories = json.loads(zf.read("categories.json"))
            assert categories[0]["name"] == "Work"

            record = json.loads(zf.read(next(n for n in names if n.startswith("passwords/"))))
            assert record["password"] in ("pw-one", "pw-two")

        store.close()

    @pytest.mark.asyncio
    async def test_card_images_travel_in_companion_format(self, tmp_path, make_transport, dav_server):
        from monica_vault.backup import BackupOrchestrator, CompanionImageCodec
        from monica_vault.vault import BankCardData, EntryKind, EnvelopeCipher

        image = b"\xff\xd8\xff\xe0 jpeg bytes" * 10
        src_store, src_session, src_images = _vault(tmp_path, "src", b"a" * 32)
        image_name = src_images.save_image(image)
        card = BankCardData(card_number="4111", image_paths=[image_name])
        _add(src_store, src_session, EntryKind.BANK_CARD, "Visa", card.to_json())
        src_store.save()

        async with make_transport() as dav:
            name = await BackupOrchestrator(src_store, src_session, src_images, dav).create_backup()

            with zipfile.ZipFile(io.BytesIO(dav_server.files[name])) as zf:
                packed = zf.read(f"images/{image_name}")
            assert CompanionImageCodec().decode(packed) == image

            dst_store, dst_session, dst_images = _vault(tmp_path, "dst", b"b" * 32)
            report = await BackupOrchestrator(dst_store, dst_session, dst_images, dav).restore_backup(name)

        assert (report.imported, report.images_imported, report.images_skipped) == (1, 1, 0)
        assert dst_images.load_image(image_name) == image
        [restored] = dst_store.entries(EntryKind.BANK_CARD)
        data = BankCardData.from_json(EnvelopeCipher.decrypt(dst_session, restored.payload))
        assert data.image_paths == [image_name]
        assert data.card_number == "4111"

        src_store.close()
        dst_store.close()

    def test_restore_nested_folder_archive(self, tmp_path):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.vault import EntryKind

        store, session, images = _vault(tmp_path, "dst", b"b" * 32)
        orchestrator = BackupOrchestrator(store, session, images, transport=None)

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("backup_folder/passwords/password_1_0.json",
                        json.dumps({"title": "Mail", "username": "me", "password": "pw"}))
            zf.writestr("backup_folder/notes/note_2_0.json",
                        json.dumps({"title": "N", "itemData": "{}"}))
            zf.writestr("backup_folder/passwords/password_3_0.json", "{broken")

        report = orchestrator.restore_archive(buf.getvalue(), "monica_backup_x.zip")
        assert (report.imported, report.failed) == (2, 1)
        assert [e.title for e in store.entries(EntryKind.PASSWORD)] == ["Mail"]
        store.close()

    def test_restore_skips_password_rows_in_csv(self, tmp_path):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.backup.csv_format import ENTRY_HEADERS, write_csv

        store, session, images = _vault(tmp_path, "dst", b"b" * 32)
        orchestrator = BackupOrchestrator(store, session, images, transport=None)

        csv_text = write_csv(ENTRY_HEADERS, [
            ["1", "PASSWORD", "Mail", "username:me;password:pw", "", "False", "", "", ""],
            ["2", "TOTP", "GitHub", '{"secret": "ABC"}', "", "False", "", "", ""],
        ])
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("Monica_20250101_000000_totp.csv", csv_text.encode("utf-8"))

        report = orchestrator.restore_archive(buf.getvalue(), "monica_backup_x.zip")
        assert report.imported == 1
        assert [e.title for e in store.entries()] == ["GitHub"]
        store.close()

    def test_unreadable_csv_keeps_other_records(self, tmp_path):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.vault import EntryStore

        store, session, images = _vault(tmp_path, "dst", b"b" * 32)
        orchestrator = BackupOrchestrator(store, session, images, transport=None)

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("passwords/password_1_0.json",
                        json.dumps({"title": "Mail", "username": "me", "password": "pw"}))
            zf.writestr("notes/note_1_0.json", json.dumps({"title": "N", "itemData": "{}"}))
            zf.writestr("Monica_20250101_000000_totp.csv", b"\xff\xfe broken")

        report = orchestrator.restore_archive(buf.getvalue(), "monica_backup_x.zip")
        assert (report.imported, report.skipped, report.failed) == (2, 0, 1)
        store.close()

        reopened = EntryStore(tmp_path / "dst" / "monica.db")
        assert sorted(e.title for e in reopened.entries()) == ["Mail", "N"]
        reopened.close()

    def test_corrupt_archive(self, tmp_path):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.errors import StructuralError

        store, session, images = _vault(tmp_path, "dst", b"b" * 32)
        orchestrator = BackupOrchestrator(store, session, images, transport=None)
        with pytest.raises(StructuralError):
            orchestrator.restore_archive(b"definitely not a zip", "monica_backup_x.zip")
        store.close()

    @pytest.mark.asyncio
    async def test_delete_backup(self, tmp_path, make_transport, dav_server):
        from monica_vault.backup import BackupOrchestrator

        store, session, images = _vault(tmp_path, "src", b"a" * 32)
        async with make_transport() as dav:
            orchestrator = BackupOrchestrator(store, session, images, dav)
            name = await orchestrator.create_backup()
            await orchestrator.delete_backup(name)
            assert await orchestrator.list_backups() == []
        store.close()

    @pytest.mark.asyncio
    async def test_upload_failure_is_audited(self, tmp_path, make_transport, dav_server):
        from monica_vault.backup import BackupOrchestrator
        from monica_vault.errors import TransportError

        dav_server.fail["PUT"] = 500
        store, session, images = _vault(tmp_path, "src", b"a" * 32)
        async with make_transport() as dav:
            with pytest.raises(TransportError):
                await BackupOrchestrator(store, session, images, dav).create_backup()
        store.close()

        log = next((tmp_path / "audit_logs").glob("audit_*.log")).read_text()
        assert "backup.failed" in log
