"""Entry store: SQLite persistence for vault entries and categories.

Unit-of-work semantics: add/update/remove are staged on one long-lived
connection and only become durable on ``save()``; ``discard()`` rolls
the pending batch back. Importers rely on this to merge a whole backup
and commit once.

Payload columns hold EnvelopeCipher output; the store never sees
plaintext secrets.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, List, Optional, Union

from .models import Category, EntryKind, VaultEntry, from_millis, to_millis

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS categories (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    sort_order  INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS entries (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    kind        TEXT NOT NULL,
    title       TEXT NOT NULL,
    payload     TEXT DEFAULT '',
    notes       TEXT DEFAULT '',
    username    TEXT DEFAULT '',
    website     TEXT DEFAULT '',
    is_favorite INTEGER DEFAULT 0,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    sort_order  INTEGER DEFAULT 0,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entries_kind_title ON entries(kind, title);
"""


def open_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """SQLite connection in WAL mode with foreign keys enforced."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


EntryPredicate = Callable[[VaultEntry], bool]


class EntryStore:
    """
    Vault entry persistence.

    Args:
        db_path: SQLite file (created with its parent directory if missing).
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = open_connection(db_path)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def __enter__(self) -> "EntryStore":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.save()
        else:
            self.discard()
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("EntryStore is closed")
        return self._conn

    # ── Entries ─────────────────────────────────────────────────────

    def add(self, entry: VaultEntry) -> VaultEntry:
        """Stage a new entry; ``entry.id`` is assigned."""
        with self._lock:
            cursor = self.conn.execute(
                """INSERT INTO entries
                   (kind, title, payload, notes, username, website,
                    is_favorite, category_id, sort_order, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.kind.value, entry.title, entry.payload, entry.notes,
                    entry.username, entry.website, int(entry.is_favorite),
                    entry.category_id, entry.sort_order,
                    to_millis(entry.created_at), to_millis(entry.updated_at),
                ),
            )
            entry.id = cursor.lastrowid
        return entry

    def update(self, entry: VaultEntry) -> None:
        if entry.id is None:
            raise ValueError("Cannot update an entry without an id")
        with self._lock:
            self.conn.execute(
                """UPDATE entries SET kind = ?, title = ?, payload = ?, notes = ?,
                   username = ?, website = ?, is_favorite = ?, category_id = ?,
                   sort_order = ?, created_at = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    entry.kind.value, entry.title, entry.payload, entry.notes,
                    entry.username, entry.website, int(entry.is_favorite),
                    entry.category_id, entry.sort_order,
                    to_millis(entry.created_at), to_millis(entry.updated_at),
                    entry.id,
                ),
            )

    def remove(self, entry_id: int) -> bool:
        with self._lock:
            cursor = self.conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            return cursor.rowcount > 0

    def get(self, entry_id: int) -> Optional[VaultEntry]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM entries WHERE id = ?", (entry_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def entries(self, kind: Optional[EntryKind] = None) -> List[VaultEntry]:
        """All entries (optionally of one kind) in insertion order."""
        with self._lock:
            if kind is None:
                rows = self.conn.execute("SELECT * FROM entries ORDER BY id").fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM entries WHERE kind = ? ORDER BY id", (kind.value,)
                ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def find(self, predicate: EntryPredicate, kind: Optional[EntryKind] = None) -> List[VaultEntry]:
        return [e for e in self.entries(kind) if predicate(e)]

    def exists(self, predicate: EntryPredicate, kind: Optional[EntryKind] = None) -> bool:
        return any(predicate(e) for e in self.entries(kind))

    def has_duplicate(self, entry: VaultEntry) -> bool:
        """True if an entry with the same dedup key is stored (or staged)."""
        key = entry.dedup_key
        return self.exists(lambda e: e.dedup_key == key, kind=entry.kind)

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    # ── Categories ──────────────────────────────────────────────────

    def categories(self) -> List[Category]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM categories ORDER BY sort_order, id"
            ).fetchall()
        return [Category(name=r["name"], sort_order=r["sort_order"], id=r["id"]) for r in rows]

    def get_category(self, category_id: Optional[int]) -> Optional[Category]:
        if category_id is None:
            return None
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM categories WHERE id = ?", (category_id,)
            ).fetchone()
        return Category(name=row["name"], sort_order=row["sort_order"], id=row["id"]) if row else None

    def find_category(self, name: str) -> Optional[Category]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM categories WHERE name = ? ORDER BY id LIMIT 1", (name,)
            ).fetchone()
        return Category(name=row["name"], sort_order=row["sort_order"], id=row["id"]) if row else None

    def add_category(self, category: Category) -> Category:
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO categories (name, sort_order) VALUES (?, ?)",
                (category.name, category.sort_order),
            )
            category.id = cursor.lastrowid
        return category

    def ensure_category(self, name: str) -> Category:
        """Return the category called ``name``, creating it at the end of the list."""
        existing = self.find_category(name)
        if existing is not None:
            return existing
        with self._lock:
            top = self.conn.execute("SELECT MAX(sort_order) FROM categories").fetchone()[0]
        created = self.add_category(Category(name=name, sort_order=(top or 0) + 1))
        logger.info("Created category %r (id=%s)", name, created.id)
        return created

    # ── Unit of work ────────────────────────────────────────────────

    def save(self) -> None:
        """Commit staged changes."""
        with self._lock:
            self.conn.commit()

    def discard(self) -> None:
        """Roll back staged changes."""
        with self._lock:
            self.conn.rollback()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> VaultEntry:
        return VaultEntry(
            id=row["id"],
            kind=EntryKind.parse(row["kind"]),
            title=row["title"],
            payload=row["payload"] or "",
            notes=row["notes"] or "",
            username=row["username"] or "",
            website=row["website"] or "",
            is_favorite=bool(row["is_favorite"]),
            category_id=row["category_id"],
            sort_order=row["sort_order"] or 0,
            created_at=from_millis(row["created_at"]),
            updated_at=from_millis(row["updated_at"]),
        )
