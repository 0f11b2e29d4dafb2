"""Relational store for photo and note rows, backed by SQLite.

Rows go in and out as plain dicts. List-valued columns and embeddings are
stored as JSON text, booleans as integers. Every insert and update is
fanned out to listeners, which is what the realtime feed is built on.
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from config import NOTES_TABLE, PHOTOS_TABLE

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS photos (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    image_url TEXT NOT NULL,
    storage_path TEXT,
    source_url TEXT,
    caption TEXT,
    tags TEXT,
    colors TEXT,
    content_type TEXT,
    domain_tags TEXT,
    has_people INTEGER,
    people_count INTEGER,
    is_screenshot INTEGER,
    vibe_tags TEXT,
    embedding TEXT
);
CREATE INDEX IF NOT EXISTS idx_photos_owner_created ON photos(owner_id, created_at);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notes_owner_created ON notes(owner_id, created_at);
"""

_JSON_COLUMNS = {"tags", "colors", "domain_tags", "vibe_tags", "embedding"}
_BOOL_COLUMNS = {"has_people", "is_screenshot"}

COLUMNS = {
    PHOTOS_TABLE: (
        "id", "owner_id", "created_at", "image_url", "storage_path", "source_url",
        "caption", "tags", "colors", "content_type", "domain_tags", "has_people",
        "people_count", "is_screenshot", "vibe_tags", "embedding",
    ),
    NOTES_TABLE: ("id", "owner_id", "created_at", "body"),
}

ChangeListener = Callable[[str, str, dict], None]  # (table, event, row)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_timestamp(value: str) -> str:
    """Rewrite an ISO timestamp in the stored form so text comparison orders it."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _check_table(table: str) -> tuple[str, ...]:
    try:
        return COLUMNS[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


def _encode(column: str, value):
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if column in _BOOL_COLUMNS:
        return int(bool(value))
    return value


def _decode(column: str, value):
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.loads(value)
    if column in _BOOL_COLUMNS:
        return bool(value)
    return value


class RecordStore:
    def __init__(self, db_path: Path):
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()
        self._listeners: list[ChangeListener] = []

    def close(self):
        self._conn.close()

    # -- realtime --

    def listen(self, listener: ChangeListener) -> Callable[[], None]:
        """Register for (table, "insert"|"update", row). Returns an unsubscribe."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, table: str, event: str, row: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(table, event, row)
            except Exception:
                logger.warning("Change listener failed", exc_info=True)

    # -- reads --

    def _row_to_dict(self, table: str, row: sqlite3.Row) -> dict:
        return {col: _decode(col, row[col]) for col in _check_table(table)}

    def select(
        self,
        table: str,
        owner_id: str,
        ids: list[str] | None = None,
        created_after: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Owner's rows, newest first, optionally filtered by id or creation time."""
        _check_table(table)
        sql = f"SELECT * FROM {table} WHERE owner_id = ?"
        params: list = [owner_id]
        if ids is not None:
            if not ids:
                return []
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        if created_after:
            sql += " AND created_at > ?"
            params.append(normalize_timestamp(created_after))
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_dict(table, r) for r in rows]

    def get(self, table: str, row_id: str, owner_id: str | None = None) -> dict | None:
        _check_table(table)
        sql = f"SELECT * FROM {table} WHERE id = ?"
        params: list = [row_id]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return self._row_to_dict(table, row) if row else None

    # -- writes --

    def insert(self, table: str, row: dict) -> dict:
        """Insert a row; the store assigns id and created_at."""
        columns = _check_table(table)
        if not row.get("owner_id"):
            raise ValueError("owner_id is required")
        values = {k: v for k, v in row.items() if k in columns}
        values["id"] = str(uuid.uuid4())
        values["created_at"] = utc_now()
        names = list(values)
        with self._lock:
            self._conn.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
                [_encode(n, values[n]) for n in names],
            )
            self._conn.commit()
        inserted = self.get(table, values["id"])
        self._notify(table, "insert", inserted)
        return inserted

    def update(
        self, table: str, row_id: str, fields: dict, owner_id: str | None = None
    ) -> dict | None:
        """Overwrite the given columns. Returns the new row, or None if not found."""
        columns = _check_table(table)
        values = {
            k: v for k, v in fields.items()
            if k in columns and k not in ("id", "owner_id", "created_at")
        }
        if not values:
            return self.get(table, row_id, owner_id)

        sql = f"UPDATE {table} SET {', '.join(f'{k} = ?' for k in values)} WHERE id = ?"
        params = [_encode(k, v) for k, v in values.items()] + [row_id]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        if cursor.rowcount == 0:
            return None
        updated = self.get(table, row_id)
        self._notify(table, "update", updated)
        return updated

    def delete(self, table: str, row_id: str, owner_id: str) -> bool:
        _check_table(table)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND owner_id = ?", (row_id, owner_id)
            )
            self._conn.commit()
        return cursor.rowcount > 0
