# Backup - WebDAV Transport
#
# Thin async client for the backup collection on a WebDAV server:
#
#   <server>/Monica_Backups/            PROPFIND (list), MKCOL (create)
#   <server>/Monica_Backups/<name>      PUT / GET / DELETE
#
# The mobile client uses the same collection name, so both sides see each
# other's archives. Requests go out once with the client's default
# timeout; there is no retry. Every failure surfaces as TransportError.

import json
import logging
import os
import posixpath
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import quote, unquote, urlparse

import httpx

from ..errors import TransportError
from .backup_crypto import ENCRYPTED_SUFFIX

logger = logging.getLogger(__name__)

BACKUP_COLLECTION = "Monica_Backups"
USER_AGENT = "Monica-Windows/1.0"
DAV_NAMESPACE = "DAV:"


@dataclass
class WebDavConfig:
    """Server location and credentials."""

    server_url: str
    username: str = ""
    password: str = ""

    def __post_init__(self):
        self.server_url = (self.server_url or "").rstrip("/")

    def to_dict(self) -> dict:
        return {
            "serverUrl": self.server_url,
            "username": self.username,
            "password": self.password,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebDavConfig":
        def pick(*keys):
            for key in keys:
                if data.get(key):
                    return str(data[key])
            return ""

        return cls(
            server_url=pick("serverUrl", "ServerUrl"),
            username=pick("username", "Username"),
            password=pick("password", "Password"),
        )


class WebDavConfigStore:
    """
    Persists WebDavConfig as JSON next to the vault data.

    The password is stored in the clear, as the companion clients do.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[WebDavConfig]:
        """Saved config, or None if absent or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable WebDAV config %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None
        config = WebDavConfig.from_dict(data)
        return config if config.server_url else None

    def save(self, config: WebDavConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


def is_backup_name(name: str) -> bool:
    return name.endswith(".zip") or name.endswith(ENCRYPTED_SUFFIX)


def parse_multistatus(xml_text: str) -> List[str]:
    """
    File names of ``.zip`` / ``.enc.zip`` resources in a PROPFIND reply.

    Matches ``response``/``href`` by local name so that servers using a
    default namespace, a ``D:`` prefix or no namespace at all all parse.
    Names are URL-decoded and sorted newest first (the timestamp in the
    name sorts lexically).

    Raises:
        ET.ParseError: Reply is not XML.
    """
    root = ET.fromstring(xml_text)
    names = []
    for node in root.iter():
        if _local_name(node.tag) != "response":
            continue
        for child in node:
            if _local_name(child.tag) != "href" or not child.text:
                continue
            href = child.text.strip()
            name = unquote(posixpath.basename(urlparse(href).path.rstrip("/")))
            if name and is_backup_name(name):
                names.append(name)
    return sorted(set(names), reverse=True)


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


class WebDavTransport:
    """
    Async WebDAV client for the backup collection.

    Args:
        config: Server URL and Basic-auth credentials
        transport: Optional httpx transport (tests pass httpx.MockTransport)

    Usage::

        async with WebDavTransport(config) as dav:
            await dav.upload("monica_backup_20250101_120000.zip", data)
    """

    def __init__(
        self,
        config: WebDavConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(config.username, config.password),
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def __aenter__(self) -> "WebDavTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── URLs ────────────────────────────────────────────────────────

    @property
    def collection_url(self) -> str:
        return f"{self.config.server_url}/{BACKUP_COLLECTION}"

    def file_url(self, name: str) -> str:
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid backup name: {name!r}")
        return f"{self.collection_url}/{quote(name)}"

    # ── Requests ────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.status_code >= 400:
            raise TransportError(
                f"{what} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

    async def test_connection(self) -> bool:
        """PROPFIND Depth 0 on the server root; any 2xx (incl. 207) is success."""
        try:
            response = await self._send(
                "PROPFIND", self.config.server_url, headers={"Depth": "0"}
            )
        except TransportError as exc:
            logger.info("WebDAV connection test failed: %s", exc)
            return False
        return 200 <= response.status_code < 300

    async def list_backups(self) -> List[str]:
        """
        Backup archive names in the collection, newest first.

        A missing collection (404) is an empty list.

        Raises:
            TransportError: Network failure, other error status or unparseable reply.
        """
        response = await self._send(
            "PROPFIND", f"{self.collection_url}/", headers={"Depth": "1"}
        )
        if response.status_code == 404:
            return []
        self._check(response, "PROPFIND")
        try:
            return parse_multistatus(response.text)
        except ET.ParseError as exc:
            raise TransportError(f"Unparseable PROPFIND reply: {exc}") from exc

    async def ensure_collection(self) -> None:
        """MKCOL the backup collection; an existing collection (405) or any
        other failure is ignored, the following PUT reports real problems."""
        try:
            response = await self._send("MKCOL", f"{self.collection_url}/")
        except TransportError as exc:
            logger.debug("MKCOL ignored: %s", exc)
            return
        if response.status_code >= 400:
            logger.debug("MKCOL returned %d (ignored)", response.status_code)

    async def upload(self, name: str, data: bytes) -> None:
        await self.ensure_collection()
        response = await self._send(
            "PUT",
            self.file_url(name),
            content=data,
            headers={"Content-Type": "application/zip"},
        )
        self._check(response, "Upload")
        logger.info("Uploaded %s (%d bytes)", name, len(data))

    async def download(self, name: str) -> bytes:
        response = await self._send("GET", self.file_url(name))
        self._check(response, "Download")
        return response.content

    async def delete(self, name: str) -> None:
        response = await self._send("DELETE", self.file_url(name))
        self._check(response, "Delete")
        logger.info("Deleted remote backup %s", name)
